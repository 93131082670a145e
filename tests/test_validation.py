from datetime import date

import pytest

from errors import ValidationFailed
from models import TransactionStatus, TransactionType
from validation import (
    parse_amount,
    parse_category_form,
    parse_sign_in_form,
    parse_sign_up_form,
    parse_transaction_form,
)


def _form(**overrides):
    form = {
        "name": "Mercado",
        "value": "R$ 1.234,56",
        "type": "expense",
        "date": "2024-03-15",
        "categoryId": "food",
        "method": "credit_card",
    }
    form.update(overrides)
    return form


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("R$ 1.234,56", 123456),
        ("12,50", 1250),
        ("12.5", 1250),
        ("1.000.000,00", 100000000),
        ("1.234", 123400),
        ("R$ 1.000.000", 100000000),
        (7, 700),
        (0.1, 10),
    ],
)
def test_parse_amount(raw, expected) -> None:
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", None, "R$"])
def test_parse_amount_rejects_garbage(raw) -> None:
    with pytest.raises(ValueError):
        parse_amount(raw)


def test_valid_transaction_form() -> None:
    result = parse_transaction_form(_form(date="15/03/2024", isScheduled="true"))

    assert result.ok
    value = result.value
    assert value.amount_cents == 123456
    assert value.type == TransactionType.expense
    assert value.date == date(2024, 3, 15)
    assert value.category_id == "food"
    assert value.is_scheduled is True
    assert value.status is None


def test_transaction_form_reports_every_bad_field() -> None:
    result = parse_transaction_form(
        _form(name=" ", value="0", type="gift", date="31/02/2024", categoryId="")
    )

    assert not result.ok
    assert result.value is None
    assert set(result.errors) == {
        "name",
        "amount_cents",
        "type",
        "date",
        "category_id",
    }
    assert result.errors["amount_cents"] == "Valor deve ser maior que zero"


def test_transaction_form_method_and_status() -> None:
    result = parse_transaction_form(_form(method="cheque", status="sometime"))
    assert set(result.errors) == {"method", "status"}

    result = parse_transaction_form(_form(status="Pending", isScheduled=True))
    assert result.value.status == TransactionStatus.pending


def test_huge_amounts_are_field_errors() -> None:
    for raw in ("1e30", "1e20", "10.000.000.001"):
        result = parse_transaction_form(_form(value=raw))

        assert not result.ok
        assert result.errors == {"amount_cents": "Valor muito alto"}


def test_unwrap_raises_with_field_errors() -> None:
    with pytest.raises(ValidationFailed) as excinfo:
        parse_transaction_form(_form(value="abc")).unwrap()

    assert excinfo.value.errors == {"amount_cents": "Valor inválido"}


def test_sign_in_form() -> None:
    assert parse_sign_in_form({"email": " Ana@Example.com ", "password": "123456"}).ok

    result = parse_sign_in_form({"email": "not-an-email", "password": "123"})
    assert set(result.errors) == {"email", "password"}
    assert result.errors["email"] == "Email inválido"


def test_sign_up_form() -> None:
    result = parse_sign_up_form(
        {
            "fullName": "Ana Souza",
            "email": "ana@example.com",
            "password": "segredo",
            "confirmPassword": "segredo",
        }
    )
    assert result.ok
    assert result.value.full_name == "Ana Souza"

    result = parse_sign_up_form(
        {
            "fullName": "Al",
            "email": "ana@example.com",
            "password": "segredo",
            "confirmPassword": "outro123",
        }
    )
    assert set(result.errors) == {"full_name", "confirm_password"}


def test_category_form_normalises_color() -> None:
    result = parse_category_form({"name": "Pets", "color": "ff00aa"})
    assert result.value.color == "#FF00AA"

    result = parse_category_form({"name": "", "color": "red"})
    assert set(result.errors) == {"name", "color"}
