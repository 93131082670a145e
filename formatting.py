"""pt-BR display helpers shared by notification messages and API payloads."""

from datetime import date

from models import PaymentMethod

PAYMENT_METHOD_LABELS = {
    PaymentMethod.credit_card.value: "Cartão de Crédito",
    PaymentMethod.debit_card.value: "Cartão de Débito",
    PaymentMethod.cash.value: "Dinheiro",
    PaymentMethod.pix.value: "PIX",
    PaymentMethod.transfer.value: "Transferência",
    PaymentMethod.boleto.value: "Boleto",
}


def _group_thousands(digits: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return ".".join(groups)


def format_currency(cents: int) -> str:
    """``-123456`` -> ``"-R$ 1.234,56"``."""
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}R$ {_group_thousands(str(whole))},{frac:02d}"


def format_percentage(value: float) -> str:
    """One decimal place, comma separator: ``12.345`` -> ``"12,3%"``."""
    return f"{value:.1f}".replace(".", ",") + "%"


def format_payment_method(method: str) -> str:
    # unknown tags are shown as-is
    return PAYMENT_METHOD_LABELS.get(method, method)


def format_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")
