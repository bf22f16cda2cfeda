"""diagbot: dialogue engine for power-tool diagnostic support chats."""

from .callbacks import CallbackAction, CallbackKind, decode
from .catalog import load_catalog, seed_repository, validate_catalog
from .config import DiagbotConfig, load_config
from .contracts import Button, EngineReply
from .engine import DialogueEngine
from .errors import CatalogValidationError, DiagbotError, StorageError
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "Button",
    "CallbackAction",
    "CallbackKind",
    "CatalogValidationError",
    "DiagbotConfig",
    "DiagbotError",
    "DialogueEngine",
    "EngineReply",
    "StorageError",
    "decode",
    "get_repository",
    "load_catalog",
    "load_config",
    "seed_repository",
    "validate_catalog",
]
