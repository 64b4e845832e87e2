"""
Textos de notificación por idioma.
"""

INVOICE_GENERATED = {
    "en": "New invoice #{number} has been generated for you.",
    "fa": "فاکتور جدید شماره {number} برای شما صادر شد.",
}


def invoice_generated_message(number: str, language: str = "en") -> str:
    template = INVOICE_GENERATED.get(language, INVOICE_GENERATED["en"])
    return template.format(number=number)


INVOICE_READY = {
    "en": "Your invoice #{number} is ready.",
    "fa": "فاکتور شماره {number} شما آماده است.",
}


def invoice_ready_message(number: str, language: str = "en") -> str:
    template = INVOICE_READY.get(language, INVOICE_READY["en"])
    return template.format(number=number)
