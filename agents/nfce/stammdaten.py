"""In-Memory Stammdaten-Provider für NFC-e-Emittenten."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .dto import Credential, Environment


@dataclass(frozen=True, slots=True)
class SellerProfile:
    tax_id: str
    name: str
    jurisdiction: str
    series: str = "1"


class SellerDirectory:
    """Resolves seller profile and active credential by tax id and environment."""

    def __init__(self) -> None:
        self._profiles: Dict[str, SellerProfile] = {}
        self._credentials: Dict[Tuple[str, Environment], Credential] = {}

    def register(self, profile: SellerProfile, *credentials: Credential) -> None:
        self._profiles[profile.tax_id] = profile
        for credential in credentials:
            if credential.tax_id != profile.tax_id:
                raise ValueError("credential belongs to a different seller")
            self._credentials[(credential.tax_id, credential.environment)] = credential

    def get(self, tax_id: str) -> SellerProfile:
        if tax_id in self._profiles:
            return self._profiles[tax_id]
        raise KeyError(f"Seller profile for '{tax_id}' not found")

    def active_credential(
        self, tax_id: str, environment: Environment | str
    ) -> Optional[Credential]:
        return self._credentials.get((tax_id, Environment.parse(environment)))

    def clear(self) -> None:
        self._profiles.clear()
        self._credentials.clear()


__all__ = ["SellerProfile", "SellerDirectory"]
