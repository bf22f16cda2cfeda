"""User-facing texts."""

from __future__ import annotations

START_MESSAGE = (
    "Здравствуйте! Я — технический помощник по электроинструментам. "
    "Опишите проблему с вашим устройством."
)
SCENARIO_SELECTION_MESSAGE = "Выберите инструмент для диагностики:"
GENERIC_REPLY = (
    "Я вас понял. Если возникнут проблемы с электроинструментом, "
    "опишите их подробнее, и я постараюсь помочь!"
)
RATE_LIMIT_MESSAGE = "Пожалуйста, подождите немного. Вы отправляете сообщения слишком часто."

YES_LABEL = "Да"
NO_LABEL = "Нет"
BACK_LABEL = "« Назад"

SITE_LINK_OFFER_MESSAGE = (
    "Хотите подробнее ознакомиться с инструкциями и рекомендациями "
    "по эксплуатации? Перейти на сайт?"
)
SITE_LINK_DIRECT_LABEL = "Только ссылку"
SITE_LINK_DECLINED_MESSAGE = "Хорошо, если что — обращайтесь! Всегда рад помочь."

EMAIL_REQUEST_MESSAGE = (
    "Отлично! Пожалуйста, укажите ваш email адрес для получения полезной "
    "информации об эксплуатации электроинструментов."
)
EMAIL_INVALID_MESSAGE = (
    "Не похоже на email адрес. Пожалуйста, отправьте адрес в формате name@example.com."
)
EMAIL_CONFIRM_LABEL = "Использовать {email}"
EMAIL_CONSENT_MESSAGE = (
    "Разрешаете ли вы получать технические рекомендации и инструкции по "
    "эксплуатации на этот email? Это не реклама."
)
EMAIL_CONSENT_YES_LABEL = "Разрешаю"
EMAIL_CONSENT_NO_LABEL = "Нет, спасибо"


def email_saved_message(site_url: str) -> str:
    return "Спасибо! Информация сохранена.\n\nВот ссылка на полезные материалы: " + site_url


def email_declined_message(site_url: str) -> str:
    return "Понял, не будем использовать ваш email.\n\nВот ссылка на полезные материалы: " + site_url


def site_post_message(site_url: str) -> str:
    return (
        "Вот ссылка на полезные материалы: " + site_url
        + "\n\nПомогла ли вам эта информация?"
    )


SITE_POST_THANKS_MESSAGE = "Рад, что смог помочь! Если появятся вопросы — пишите."
SITE_POST_SORRY_MESSAGE = (
    "Жаль. Опишите проблему подробнее или обратитесь в сервисный центр."
)
