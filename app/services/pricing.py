"""
Pricing Catalog - pure cost lookup for generation requests.

Each model carries a flat `cost_per_generation` and an optional price table
keyed by the request's options, e.g. `["resolution", "duration"]` produces
keys like `720p-5s`. A missing or incomplete key falls back to the flat cost.
Nothing here touches the database.
"""

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator

from app.config import settings
from app.exceptions import InvalidPricingError, UnknownModelError
from app.models.api import GenerationOptions
from app.models.domain import Quote, to_minor

# Options that may form part of a price key, and how each renders
PRICED_OPTIONS = ("duration", "resolution", "quality", "rendering_speed")
QUANTITY_OPTIONS = ("num_images",)

PROJECT_ROOT = Path(__file__).parent.parent.parent


def format_key_segment(option: str, value: object) -> str:
    """Render one option value as it appears in a price key."""
    if option == "duration":
        return f"{value}s"
    return str(value)


# ============================================================================
# Catalog file schema
# ============================================================================


class ModelPricingEntry(BaseModel):
    """One model in the pricing catalog file."""

    model_id: str = Field(..., min_length=1, max_length=128)
    name: str
    kind: Literal["image", "video"]
    cost_per_generation: Decimal = Field(..., gt=0)
    option_keys: list[str] = Field(default_factory=list)
    option_defaults: dict[str, str] = Field(default_factory=dict)
    prices: dict[str, Decimal] = Field(default_factory=dict)
    quantity_option: Literal["num_images"] | None = None
    is_active: bool = True

    @field_validator("option_keys")
    @classmethod
    def validate_option_keys(cls, v: list[str]) -> list[str]:
        unknown = [key for key in v if key not in PRICED_OPTIONS]
        if unknown:
            raise ValueError(f"Unsupported pricing options: {unknown}")
        return v

    @model_validator(mode="after")
    def validate_prices(self) -> "ModelPricingEntry":
        if self.prices and not self.option_keys:
            raise ValueError(f"{self.model_id}: prices given without option_keys")
        for key, price in self.prices.items():
            if price <= 0:
                raise ValueError(f"{self.model_id}: price for {key} must be positive")
        return self


class PricingCatalogFile(BaseModel):
    """Top-level pricing catalog document."""

    models: list[ModelPricingEntry]


# ============================================================================
# Runtime pricing model
# ============================================================================


@dataclass(frozen=True)
class PricingTable:
    """Option-keyed prices in minor units."""

    option_keys: tuple[str, ...]
    prices: Mapping[str, int]
    defaults: Mapping[str, str]

    def key_for(self, options: GenerationOptions) -> str | None:
        """Build the price key for `options`, or None if an option is missing."""
        if not self.option_keys:
            return None
        segments = []
        for option in self.option_keys:
            value = getattr(options, option)
            if value is None:
                value = self.defaults.get(option)
            if value is None:
                return None
            segments.append(format_key_segment(option, value))
        return "-".join(segments)


@dataclass(frozen=True)
class ModelPricing:
    """Pricing for one generation model."""

    model_id: str
    name: str
    kind: str
    cost_per_generation_minor: int
    table: PricingTable
    quantity_option: str | None
    is_active: bool

    @classmethod
    def from_entry(cls, entry: ModelPricingEntry) -> "ModelPricing":
        try:
            prices = {key: to_minor(price) for key, price in entry.prices.items()}
            flat = to_minor(entry.cost_per_generation)
        except ValueError as exc:
            raise InvalidPricingError(entry.model_id, str(exc)) from exc
        return cls(
            model_id=entry.model_id,
            name=entry.name,
            kind=entry.kind,
            cost_per_generation_minor=flat,
            table=PricingTable(
                option_keys=tuple(entry.option_keys),
                prices=prices,
                defaults=dict(entry.option_defaults),
            ),
            quantity_option=entry.quantity_option,
            is_active=entry.is_active,
        )


class PricingCatalog:
    """Deterministic `quote(model_id, options)` over a fixed set of models."""

    def __init__(self, models: list[ModelPricing]) -> None:
        self._models = {model.model_id: model for model in models}

    @classmethod
    def from_file(cls, path: str | Path) -> "PricingCatalog":
        """Load and validate a pricing catalog JSON file."""
        catalog_path = Path(path)
        if not catalog_path.is_absolute() and not catalog_path.exists():
            catalog_path = PROJECT_ROOT / catalog_path
        document = PricingCatalogFile.model_validate_json(catalog_path.read_text())
        return cls([ModelPricing.from_entry(entry) for entry in document.models])

    def models(self, include_inactive: bool = False) -> list[ModelPricing]:
        return [m for m in self._models.values() if include_inactive or m.is_active]

    def get(self, model_id: str) -> ModelPricing:
        model = self._models.get(model_id)
        if model is None or not model.is_active:
            raise UnknownModelError(model_id)
        return model

    def quote(self, model_id: str, options: GenerationOptions) -> Quote:
        """
        Price a generation request.

        Raises:
            UnknownModelError: Model is missing or inactive
            InvalidPricingError: Resolved cost is not positive
        """
        model = self.get(model_id)

        price_key = model.table.key_for(options)
        unit_price = model.table.prices.get(price_key) if price_key else None
        if unit_price is None:
            price_key = None
            unit_price = model.cost_per_generation_minor

        quantity = 1
        if model.quantity_option is not None:
            quantity = getattr(options, model.quantity_option) or 1

        total = unit_price * quantity
        if total <= 0:
            raise InvalidPricingError(model_id, f"resolved cost {total} is not positive")

        return Quote(
            model_id=model_id,
            credits_minor=total,
            price_key=price_key,
            quantity=quantity,
        )


@lru_cache(maxsize=1)
def get_pricing_catalog() -> PricingCatalog:
    """Load the configured pricing catalog once per process."""
    return PricingCatalog.from_file(settings.pricing_catalog_path)
