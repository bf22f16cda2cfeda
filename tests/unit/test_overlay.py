"""Tests for the lead-capture overlay state machine."""

import pytest

from diagbot import messages
from diagbot.callbacks import CallbackAction, CallbackKind
from diagbot.config import OverlayConfig
from diagbot.overlay import LeadCaptureOverlay, extract_email_candidates, is_valid_email
from diagbot.persistence import InMemoryDialogueRepository, OverlayState

SITE = "https://tools.example"


@pytest.fixture
def repo():
    return InMemoryDialogueRepository()


@pytest.fixture
def overlay(repo):
    return LeadCaptureOverlay(repo, OverlayConfig(trigger_message_count=3, site_url=SITE))


async def _user_in(repo, state, email=None):
    await repo.get_or_create_user(7)
    await repo.set_overlay_state(7, state)
    if email is not None:
        await repo.set_email(7, email, False)
    return await repo.get_user(7)


@pytest.mark.parametrize(
    "text, valid",
    [
        ("user@example.com", True),
        ("  first.last+tag@sub.domain.org ", True),
        ("a%b-c@x-y.io", True),
        ("not-an-email", False),
        ("user@host", False),
        ("user@@example.com", False),
        ("user@example.c", False),
        ("пользователь@пример.рф", False),
    ],
)
def test_is_valid_email(text, valid):
    assert is_valid_email(text) is valid


def test_extract_email_candidates():
    assert extract_email_candidates("пишите на ivan@mail.ru, спасибо") == ["ivan@mail.ru"]
    assert extract_email_candidates("ничего") == []


@pytest.mark.asyncio
async def test_offer_opens_at_threshold_and_resets_counter(repo, overlay):
    assert await overlay.register_message(7) is None
    assert await overlay.register_message(7) is None
    reply = await overlay.register_message(7)

    assert reply.text == messages.SITE_LINK_OFFER_MESSAGE
    assert [b.callback for b in reply.buttons] == ["site_link_yes", "site_link_yes_post", "site_link_no"]
    user = await repo.get_user(7)
    assert user.fsm_state is OverlayState.OFFERING_SITE_LINK
    assert user.message_count == 0


@pytest.mark.asyncio
async def test_disabled_overlay_never_offers(repo):
    overlay = LeadCaptureOverlay(repo, OverlayConfig(enabled=False, trigger_message_count=1))
    assert await overlay.register_message(7) is None
    assert await repo.get_user(7) is None


@pytest.mark.asyncio
async def test_email_path(repo, overlay):
    user = await _user_in(repo, OverlayState.OFFERING_SITE_LINK)
    outcome = await overlay.handle_callback(user, CallbackAction(kind=CallbackKind.SITE_LINK_YES))
    assert outcome.reply.text == messages.EMAIL_REQUEST_MESSAGE
    assert not outcome.closed

    user = await repo.get_user(7)
    outcome = await overlay.handle_message(user, " ivan@mail.ru ")
    assert outcome.reply.text == messages.EMAIL_CONSENT_MESSAGE
    user = await repo.get_user(7)
    assert user.fsm_state is OverlayState.AWAITING_EMAIL_CONSENT
    assert user.email == "ivan@mail.ru"
    assert user.consent_granted is False

    outcome = await overlay.handle_callback(user, CallbackAction(kind=CallbackKind.EMAIL_CONSENT_YES))
    assert outcome.closed
    assert outcome.reply.text == messages.email_saved_message(SITE)
    user = await repo.get_user(7)
    assert user.fsm_state is OverlayState.IDLE
    assert user.email == "ivan@mail.ru"
    assert user.consent_granted is True


@pytest.mark.asyncio
async def test_consent_declined_keeps_email(repo, overlay):
    user = await _user_in(repo, OverlayState.AWAITING_EMAIL_CONSENT, email="ivan@mail.ru")
    outcome = await overlay.handle_message(user, "нет")
    assert outcome.closed
    assert outcome.reply.text == messages.email_declined_message(SITE)
    user = await repo.get_user(7)
    assert user.email == "ivan@mail.ru"
    assert user.consent_granted is False
    assert user.fsm_state is OverlayState.IDLE


@pytest.mark.asyncio
async def test_invalid_email_reprompts_without_mutation(repo, overlay):
    user = await _user_in(repo, OverlayState.AWAITING_EMAIL)
    outcome = await overlay.handle_message(user, "not-an-email")
    assert outcome.reply.text == messages.EMAIL_INVALID_MESSAGE
    assert outcome.reply.buttons == []
    user = await repo.get_user(7)
    assert user.fsm_state is OverlayState.AWAITING_EMAIL
    assert user.email is None


@pytest.mark.asyncio
async def test_embedded_email_offers_confirm_button(repo, overlay):
    user = await _user_in(repo, OverlayState.AWAITING_EMAIL)
    outcome = await overlay.handle_message(user, "мой адрес ivan@mail.ru.")
    assert outcome.reply.text == messages.EMAIL_INVALID_MESSAGE
    assert [b.callback for b in outcome.reply.buttons] == ["email_confirm_ivan@mail.ru"]
    assert (await repo.get_user(7)).email is None

    outcome = await overlay.handle_callback(
        user, CallbackAction(kind=CallbackKind.EMAIL_CONFIRM, email="ivan@mail.ru")
    )
    assert outcome.reply.text == messages.EMAIL_CONSENT_MESSAGE
    assert (await repo.get_user(7)).email == "ivan@mail.ru"


@pytest.mark.asyncio
async def test_confirm_button_omitted_when_token_too_long(repo, overlay):
    user = await _user_in(repo, OverlayState.AWAITING_EMAIL)
    address = "a" * 50 + "@example.com"
    outcome = await overlay.handle_message(user, f"вот {address} ")
    assert outcome.reply.buttons == []


@pytest.mark.asyncio
async def test_direct_link_path(repo, overlay):
    user = await _user_in(repo, OverlayState.OFFERING_SITE_LINK)
    outcome = await overlay.handle_callback(user, CallbackAction(kind=CallbackKind.SITE_LINK_YES_POST))
    assert SITE in outcome.reply.text
    assert [b.callback for b in outcome.reply.buttons] == ["site_link_yes_post", "site_link_no_post"]
    user = await repo.get_user(7)
    assert user.fsm_state is OverlayState.OFFERING_SITE_POST

    outcome = await overlay.handle_callback(user, CallbackAction(kind=CallbackKind.SITE_LINK_NO_POST))
    assert outcome.closed
    assert outcome.reply.text == messages.SITE_POST_SORRY_MESSAGE
    assert (await repo.get_user(7)).fsm_state is OverlayState.IDLE


@pytest.mark.asyncio
async def test_decline_offer_by_text(repo, overlay):
    user = await _user_in(repo, OverlayState.OFFERING_SITE_LINK)
    outcome = await overlay.handle_message(user, "Нет!")
    assert outcome.closed
    assert outcome.reply.text == messages.SITE_LINK_DECLINED_MESSAGE


@pytest.mark.asyncio
async def test_other_text_represents_prompt(repo, overlay):
    user = await _user_in(repo, OverlayState.OFFERING_SITE_LINK)
    outcome = await overlay.handle_message(user, "а что там?")
    assert outcome.reply.text == messages.SITE_LINK_OFFER_MESSAGE
    assert (await repo.get_user(7)).fsm_state is OverlayState.OFFERING_SITE_LINK


@pytest.mark.asyncio
async def test_token_not_accepted_in_state_is_unhandled(repo, overlay):
    user = await _user_in(repo, OverlayState.AWAITING_EMAIL)
    outcome = await overlay.handle_callback(user, CallbackAction(kind=CallbackKind.EMAIL_CONSENT_YES))
    assert not outcome.reply.handled
    assert (await repo.get_user(7)).fsm_state is OverlayState.AWAITING_EMAIL
