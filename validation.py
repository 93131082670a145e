"""Turns raw form values into typed inputs, one message per bad field.

Nothing here touches the store: a form that fails to parse never gets as
far as a service call.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, Mapping, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from dates import parse_calendar_date
from errors import ValidationFailed
from models import TransactionStatus, TransactionType
from schemas import (
    PAYMENT_METHOD_CHOICES,
    CategoryIn,
    SignInIn,
    SignUpIn,
    TransactionIn,
)

M = TypeVar("M", bound=BaseModel)

_TRUE_VALUES = {"1", "true", "yes", "y", "on", "sim"}

# "1.234" and "1.000.000" group thousands with dots and carry no decimals
_THOUSANDS = re.compile(r"^-?\d{1,3}(\.\d{3})+$")

FIELD_MESSAGES = {
    ("name", "string_too_short"): "Nome é obrigatório",
    ("full_name", "string_too_short"): "Nome deve ter pelo menos 3 caracteres",
    ("email", "string_pattern_mismatch"): "Email inválido",
    ("password", "string_too_short"): "Senha deve ter pelo menos 6 caracteres",
    ("amount_cents", "greater_than_equal"): "Valor deve ser maior que zero",
    ("amount_cents", "less_than_equal"): "Valor muito alto",
    ("category_id", "string_too_short"): "Categoria é obrigatória",
    ("method", "string_too_short"): "Método de pagamento é obrigatório",
    ("color", "string_pattern_mismatch"): "Cor deve estar no formato #RRGGBB",
}


@dataclass
class ParseResult(Generic[M]):
    value: Optional[M] = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def unwrap(self) -> M:
        if self.errors:
            raise ValidationFailed(self.errors)
        return self.value


def parse_amount(value: Any) -> int:
    """Money in cents from ``"R$ 1.234,56"``, ``"1.234"``, ``"12.5"`` or a number."""
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        amount = Decimal(str(value))
    else:
        clean = (
            str(value or "").strip().replace("R$", "").replace("$", "").replace(" ", "")
        )
        if "," not in clean and _THOUSANDS.match(clean):
            clean = clean.replace(".", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Valor inválido") from exc
    if not amount.is_finite():
        raise ValueError("Valor inválido")
    try:
        return int((amount * 100).quantize(Decimal("1")))
    except ArithmeticError as exc:
        raise ValueError("Valor muito alto") from exc


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_VALUES


def _text(raw: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return str(value).strip()
    return ""


def _collect(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for err in exc.errors():
        name = str(err["loc"][0]) if err["loc"] else "__all__"
        if name in errors:
            continue
        errors[name] = FIELD_MESSAGES.get((name, err["type"]), err["msg"])
    return errors


def _build(
    model: type[M], data: dict[str, Any], errors: dict[str, str]
) -> ParseResult[M]:
    try:
        value = model(**{k: v for k, v in data.items() if k not in errors})
    except ValidationError as exc:
        for name, message in _collect(exc).items():
            errors.setdefault(name, message)
        return ParseResult(errors=errors)
    if errors:
        return ParseResult(errors=errors)
    return ParseResult(value=value)


def parse_transaction_form(raw: Mapping[str, Any]) -> ParseResult[TransactionIn]:
    errors: dict[str, str] = {}
    data: dict[str, Any] = {
        "name": _text(raw, "name"),
        "description": _text(raw, "description") or None,
        "category_id": _text(raw, "categoryId", "category_id"),
        "method": _text(raw, "method"),
        "is_scheduled": parse_bool(raw.get("isScheduled", raw.get("is_scheduled"))),
    }

    try:
        data["amount_cents"] = abs(parse_amount(raw.get("value")))
    except ValueError as exc:
        errors["amount_cents"] = str(exc)

    type_raw = _text(raw, "type").lower()
    try:
        data["type"] = TransactionType(type_raw)
    except ValueError:
        errors["type"] = "Tipo deve ser receita ou despesa"

    parsed_date = parse_calendar_date(raw.get("date"))
    if parsed_date is None:
        errors["date"] = "Data inválida"
    else:
        data["date"] = parsed_date

    if data["method"] and data["method"] not in PAYMENT_METHOD_CHOICES:
        errors["method"] = "Método de pagamento inválido"

    status_raw = _text(raw, "status").lower()
    if status_raw:
        try:
            data["status"] = TransactionStatus(status_raw)
        except ValueError:
            errors["status"] = "Status inválido"

    return _build(TransactionIn, data, errors)


def parse_sign_in_form(raw: Mapping[str, Any]) -> ParseResult[SignInIn]:
    data = {
        "email": _text(raw, "email").lower(),
        "password": raw.get("password") or "",
    }
    return _build(SignInIn, data, {})


def parse_sign_up_form(raw: Mapping[str, Any]) -> ParseResult[SignUpIn]:
    errors: dict[str, str] = {}
    password = raw.get("password") or ""
    confirm = raw.get("confirmPassword", raw.get("confirm_password"))
    if confirm is not None and confirm != password:
        errors["confirm_password"] = "As senhas não coincidem"
    data = {
        "full_name": _text(raw, "fullName", "full_name"),
        "email": _text(raw, "email").lower(),
        "password": password,
    }
    return _build(SignUpIn, data, errors)


_HEX = re.compile(r"^#?[0-9A-Fa-f]{6}$")


def parse_category_form(raw: Mapping[str, Any]) -> ParseResult[CategoryIn]:
    color = _text(raw, "color") or None
    if color and _HEX.match(color) and not color.startswith("#"):
        color = f"#{color}"
    data = {
        "name": _text(raw, "name"),
        "color": color.upper() if color else None,
        "icon": _text(raw, "icon") or None,
    }
    return _build(CategoryIn, data, {})
