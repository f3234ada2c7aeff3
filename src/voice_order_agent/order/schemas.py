"""
Pydantic schemas for the order module.

Defines the catalog, order line, and parsed voice item models.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Language(str, Enum):
    """Languages a catalog entry is named in."""

    EN = "EN"
    HI = "HI"


class QuantityLabel(str, Enum):
    """The closed set of quantities an order line may hold."""

    G100 = "100g"
    G250 = "250g"
    G500 = "500g"
    KG1 = "1kg"


# Quantity applied when only a vegetable name is recognized.
DEFAULT_QUANTITY = QuantityLabel.KG1

# Empty sentinel: applying it removes the order line.
NO_QUANTITY = ""


def normalize_quantity(value: "QuantityLabel | str | None") -> QuantityLabel | None:
    """
    Coerce a quantity into the closed enumeration.

    Args:
        value: A QuantityLabel, its string value, or the empty sentinel.

    Returns:
        The QuantityLabel, or None for the empty/unset sentinel.

    Raises:
        ValueError: If the value is not part of the closed enumeration.
    """
    if value is None or value == NO_QUANTITY:
        return None
    if isinstance(value, QuantityLabel):
        return value
    return QuantityLabel(value.strip())


class CatalogEntry(BaseModel):
    """One vegetable offered today."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    catalog_id: int = Field(..., alias="id", description="Catalog identifier")
    names: dict[Language, str] = Field(
        ...,
        alias="name",
        description="Display name per language",
    )
    price: float = Field(default=0.0, description="Price per kilogram")
    unit: dict[Language, str] = Field(default_factory=dict, description="Unit label per language")

    def all_names(self) -> list[str]:
        """Names in catalog language order, skipping blanks."""
        return [self.names[lang] for lang in Language if self.names.get(lang, "").strip()]

    @property
    def price_label(self) -> str:
        unit = self.unit.get(Language.EN, "kg")
        return f"{self.price:g}/{unit}"


class OrderItem(BaseModel):
    """A line in the in-progress order."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    catalog_id: int = Field(..., alias="id", description="Catalog identifier")
    quantity: QuantityLabel = Field(..., description="Selected quantity")


class ParsedOrderItem(BaseModel):
    """One entry of the transcript parser's structured output."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    vegetable_name_raw: str = Field(
        ...,
        alias="vegetable",
        min_length=1,
        description="Vegetable name as spoken, in English or Hindi",
    )
    quantity: QuantityLabel | Literal[""] = Field(
        ...,
        description="Normalized quantity, or \"\" when the item should be removed",
    )


class VoiceOrderPayload(BaseModel):
    """Telemetry record of one parsed voice order."""

    transcription: str = Field(..., description="Raw transcript text")
    items: list[ParsedOrderItem] = Field(default_factory=list, description="Parsed items")
