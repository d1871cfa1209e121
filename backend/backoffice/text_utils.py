from __future__ import annotations

import re
import unicodedata
from typing import Optional

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    """
    Comparison form of free text: lowercase, no accents, only [a-z0-9 ],
    single spaces. "Padaria São João!" -> "padaria sao joao".
    """
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _NON_ALNUM.sub("", stripped)
    return _SPACES.sub(" ", stripped).strip()


def normalize_key(value: Optional[str]) -> str:
    """Identifier lookup key (SKU codes, listing ids): uppercase, no spaces."""
    if value is None:
        return ""
    return str(value).upper().strip().replace(" ", "")


def normalize_channel(value: Optional[str]) -> str:
    """Channel slug: "Mercado Livre" -> "mercado_livre"."""
    if not value:
        return ""
    return _SPACES.sub("_", normalize_text(value))


def normalize_name_key(value: Optional[str]) -> str:
    """Lookup key for catalog names (categories, cost centers)."""
    if not value:
        return ""
    return _SPACES.sub(" ", value.strip().lower())
