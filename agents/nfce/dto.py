"""Datentransferobjekte für die NFC-e-Ausgabe.

Alle Strukturen sind unveränderlich, mit Ausnahme von ``OutcomeRecord``, das
als Ergebnis einer einzelnen Anfrage an die Behörde zurückgegeben wird.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, NamedTuple, Optional

from .errors import AuthorityRejection, ValidationError

# IBGE state codes; the first two digits of every access key
UF_CODES: Dict[str, str] = {
    "RO": "11", "AC": "12", "AM": "13", "RR": "14", "PA": "15", "AP": "16",
    "TO": "17", "MA": "21", "PI": "22", "CE": "23", "RN": "24", "PB": "25",
    "PE": "26", "AL": "27", "SE": "28", "BA": "29", "MG": "31", "ES": "32",
    "RJ": "33", "SP": "35", "PR": "41", "SC": "42", "RS": "43", "MS": "50",
    "MT": "51", "GO": "52", "DF": "53",
}
_UF_BY_CODE = {code: uf for uf, code in UF_CODES.items()}


def resolve_jurisdiction(value: str) -> str:
    """Normalise ``"sp"``, ``"SP"`` or ``"35"`` to the two-letter acronym.

    Unknown values are returned upper-cased so that lookups fail later with a
    precise error instead of here.
    """

    token = (value or "").strip().upper()
    if token in _UF_BY_CODE:
        return _UF_BY_CODE[token]
    return token


def jurisdiction_code(value: str) -> str:
    acronym = resolve_jurisdiction(value)
    if acronym not in UF_CODES:
        raise ValidationError(f"unknown jurisdiction {value!r}")
    return UF_CODES[acronym]


class Environment(str, Enum):
    PRODUCTION = "production"
    HOMOLOGATION = "homologation"

    @property
    def tp_amb(self) -> str:
        return "1" if self is Environment.PRODUCTION else "2"

    @classmethod
    def parse(cls, value: "Environment | str") -> "Environment":
        if isinstance(value, Environment):
            return value
        token = str(value).strip().lower()
        if token in ("production", "producao", "prod", "1"):
            return cls.PRODUCTION
        if token in ("homologation", "homologacao", "staging", "2"):
            return cls.HOMOLOGATION
        raise ValidationError(f"unknown environment {value!r}")


class Operation(str, Enum):
    AUTHORIZATION = "authorization"
    CANCELLATION = "cancellation"
    QUERY = "query"
    STATUS = "status"


@dataclass(frozen=True, slots=True)
class NumberingKey:
    tax_id: str
    jurisdiction: str
    series: str
    environment: Environment

    def __post_init__(self) -> None:
        if not self.tax_id or not str(self.tax_id).strip():
            raise ValidationError("tax_id is required")
        if not self.series or not str(self.series).strip():
            raise ValidationError("series is required")
        object.__setattr__(self, "tax_id", str(self.tax_id).strip())
        object.__setattr__(self, "jurisdiction", resolve_jurisdiction(self.jurisdiction))
        object.__setattr__(self, "series", str(self.series).strip())
        object.__setattr__(self, "environment", Environment.parse(self.environment))

    def as_dict(self) -> Dict[str, str]:
        return {
            "tax_id": self.tax_id,
            "jurisdiction": self.jurisdiction,
            "series": self.series,
            "environment": self.environment.value,
        }


class Allocation(NamedTuple):
    ordinal: int
    confirmation_code: str


@dataclass(frozen=True, slots=True)
class Credential:
    """Active signing credential of a seller for one environment."""

    tax_id: str
    jurisdiction: str
    environment: Environment
    scope_id: str
    scope_token: str = field(repr=False)
    certificate_path: str = ""
    certificate_password: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jurisdiction", resolve_jurisdiction(self.jurisdiction))
        object.__setattr__(self, "environment", Environment.parse(self.environment))

    def validate(self) -> None:
        missing = [
            name
            for name in ("tax_id", "jurisdiction", "scope_id", "scope_token", "certificate_path")
            if not getattr(self, name)
        ]
        if missing:
            raise ValidationError(f"credential is missing fields: {', '.join(missing)}")

    def redacted(self) -> Dict[str, str]:
        return {
            "tax_id": self.tax_id[:4] + "*" * max(len(self.tax_id) - 4, 0),
            "jurisdiction": self.jurisdiction,
            "environment": self.environment.value,
            "scope_id": self.scope_id,
        }


class OutcomeStatus(str, Enum):
    AUTHORIZED = "authorized"
    CANCELED = "canceled"
    DENIED = "denied"
    CANCELLATION_CONFIRMED = "cancellation_confirmed"
    PROCESSING = "processing"
    NOT_FOUND = "not_found"
    SERVICE_AVAILABLE = "service_available"
    INVALID_DATE = "invalid_date"
    INVALID_PROTOCOL = "invalid_protocol"
    INVALID_JUSTIFICATION = "invalid_justification"
    CANCELLATION_ERROR = "cancellation_error"
    ERROR = "error"
    PARSER_ERROR = "parser_error"


@dataclass
class OutcomeRecord:
    operation: Operation
    status: OutcomeStatus
    success: bool
    status_code: Optional[str] = None
    reason: Optional[str] = None
    access_key: Optional[str] = None
    protocol: Optional[str] = None
    authorized_at: Optional[datetime] = None
    raw_response: str = field(default="", repr=False)

    @property
    def is_retryable(self) -> bool:
        return self.status is OutcomeStatus.PROCESSING

    def raise_for_status(self) -> "OutcomeRecord":
        if not self.success:
            raise AuthorityRejection(self)
        return self

    def to_dict(self, *, include_raw: bool = False) -> Dict[str, object]:
        data = asdict(self)
        data["operation"] = self.operation.value
        data["status"] = self.status.value
        data["retryable"] = self.is_retryable
        data["authorized_at"] = self.authorized_at.isoformat() if self.authorized_at else None
        if not include_raw:
            data.pop("raw_response")
        return data


@dataclass(frozen=True, slots=True)
class NumberingStats:
    key: NumberingKey
    next_ordinal: int
    authorized: int
    denied: int
    rejected: int
    canceled: int
    in_flight: int
    last_issued_at: Optional[datetime]

    def to_dict(self) -> Dict[str, object]:
        return {
            **self.key.as_dict(),
            "next_ordinal": self.next_ordinal,
            "authorized": self.authorized,
            "denied": self.denied,
            "rejected": self.rejected,
            "canceled": self.canceled,
            "in_flight": self.in_flight,
            "last_issued_at": self.last_issued_at.isoformat() if self.last_issued_at else None,
        }


def validate_access_key(access_key: str) -> str:
    key = (access_key or "").strip()
    if len(key) != 44 or not key.isdigit():
        raise ValidationError("access key must have exactly 44 digits")
    return key


def validate_justification(justification: str) -> str:
    text = (justification or "").strip()
    if not 15 <= len(text) <= 255:
        raise ValidationError("justification must have between 15 and 255 characters")
    return text


__all__ = [
    "UF_CODES",
    "resolve_jurisdiction",
    "jurisdiction_code",
    "Environment",
    "Operation",
    "NumberingKey",
    "Allocation",
    "Credential",
    "OutcomeStatus",
    "OutcomeRecord",
    "NumberingStats",
    "validate_access_key",
    "validate_justification",
]
