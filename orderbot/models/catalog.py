from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..services.text_normalizer import display_name, make_product_id


class Product(BaseModel):
    """Single catalog entry flattened out of the nested price list."""

    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    subcategory: str
    name: str
    display_name: str
    price: Optional[int] = None
    price_from: Optional[int] = None
    in_stock: bool = True
    unit: Optional[str] = None
    barcode: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    position: int = 0

    @model_validator(mode="after")
    def _check_price_exclusivity(self) -> "Product":
        if (self.price is None) == (self.price_from is None):
            raise ValueError("exactly one of price or price_from must be set")
        if (self.price if self.price is not None else self.price_from) < 0:
            raise ValueError("price must not be negative")
        return self

    @property
    def unit_price(self) -> int:
        return self.price if self.price is not None else self.price_from

    @property
    def has_starting_price(self) -> bool:
        return self.price_from is not None

    @classmethod
    def from_record(
        cls,
        category: str,
        subcategory: str,
        name: str,
        attributes: dict,
        *,
        position: int = 0,
    ) -> "Product":
        """Build a product from one ``name -> attributes`` entry of the price list."""

        product_id = make_product_id(category, subcategory, name)
        cat, sub, slug = product_id.split("::")
        if not (cat and sub and slug):
            raise ValueError(f"product record without a name: {product_id!r}")
        if not isinstance(attributes, dict):
            raise ValueError(f"attributes of {product_id!r} must be a mapping")
        barcode = attributes.get("barcode") or attributes.get("codigo_barras")
        return cls(
            id=product_id,
            category=cat,
            subcategory=sub,
            name=slug,
            display_name=display_name(slug),
            price=attributes.get("price", attributes.get("precio")),
            price_from=attributes.get("price_from", attributes.get("precio_desde")),
            in_stock=attributes.get("stock", True) is not False,
            unit=attributes.get("unit", attributes.get("unidad")),
            barcode=str(barcode) if barcode else None,
            images=list(attributes.get("images", attributes.get("imagenes")) or []),
            position=position,
        )


class CatalogStats(BaseModel):
    total_products: int = 0
    total_categories: int = 0
    total_subcategories: int = 0
    indexed_words: int = 0
    skipped_records: int = 0


class CategorySummary(BaseModel):
    name: str
    display_name: str
    emoji: str
    subcategories: List[str] = Field(default_factory=list)
    total_products: int = 0
