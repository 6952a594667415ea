"""
CatalogIndex - fast lookups over the nested price list.

The price list is ``category -> subcategory -> product name -> attributes``.
``build`` flattens it in a single pass into one table keyed by product id and
maintains the secondary indices next to it:

* normalized full name -> product
* normalized word (len > 2) -> products whose name contains it
* barcode -> product
* category -> products, ``category::subcategory`` -> products

Every build produces a new frozen ``_IndexSnapshot`` and replaces the
reference in one assignment. Readers grab the reference once per call, so a
concurrent rebuild never exposes a half-filled index.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..models.catalog import CatalogStats, CategorySummary, Product
from .error_handling import ValidationError
from .text_normalizer import PRODUCT_ID_SEPARATOR, normalize_message, normalize_search, slugify_segment

logger = logging.getLogger(__name__)

MIN_WORD_LENGTH = 3
MIN_SUBSTRING_LENGTH = 3

EXACT_SCORE = 100
WORD_SCORE = 50
WORD_REPEAT_BONUS = 25
SUBSTRING_SCORE = 75
SUBSTRING_REPEAT_BONUS = 30

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

CATEGORY_EMOJIS: Dict[str, str] = {
    "libreria": "📚",
    "cotillon": "🎉",
    "jugueteria": "🧸",
    "juguetes": "🧸",
    "impresiones": "🖨️",
    "fotocopiadora": "📄",
    "bijou": "💍",
    "accesorios_celular": "📱",
    "accesorio_para_celular": "📱",
    "accesorios_computadora": "💻",
    "higiene": "🧼",
    "limpieza": "🧹",
    "alimentos": "🍎",
    "bebidas": "🥤",
    "deportes": "⚽",
    "herramientas": "🔧",
    "electronica": "🔌",
    "ropa": "👕",
    "varios": "📦",
}
DEFAULT_CATEGORY_EMOJI = "📦"

CATEGORY_ALIASES: Dict[str, str] = {
    "juguete": "juguetes",
    "jugueteria": "juguetes",
    "impresion": "impresiones",
    "imprenta": "impresiones",
    "fotocopia": "impresiones",
    "fotocopias": "impresiones",
    "fotocopiadora": "impresiones",
    "libros": "libreria",
    "fiesta": "cotillon",
    "bijouterie": "bijou",
    "joyas": "bijou",
    "celular": "accesorio_para_celular",
    "celu": "accesorio_para_celular",
    "telefono": "accesorio_para_celular",
    "accesorios_celular": "accesorio_para_celular",
    "accesorios_para_celular": "accesorio_para_celular",
    "accesorio_de_celular": "accesorio_para_celular",
    "computadora": "accesorios_computadora",
    "compu": "accesorios_computadora",
    "pc": "accesorios_computadora",
}


@dataclass(frozen=True)
class _IndexSnapshot:
    products: Mapping[str, Product] = field(default_factory=dict)
    by_name: Mapping[str, Product] = field(default_factory=dict)
    by_word: Mapping[str, Tuple[Product, ...]] = field(default_factory=dict)
    by_barcode: Mapping[str, Product] = field(default_factory=dict)
    by_category: Mapping[str, Tuple[Product, ...]] = field(default_factory=dict)
    by_subcategory: Mapping[str, Tuple[Product, ...]] = field(default_factory=dict)
    stats: CatalogStats = field(default_factory=CatalogStats)


def _word_variants(word: str) -> List[str]:
    """The word itself plus naive Spanish singulars (``lapiceras`` -> ``lapicera``)."""

    variants = [word]
    if word.endswith("es") and len(word) - 2 >= MIN_WORD_LENGTH:
        variants.append(word[:-2])
    if word.endswith("s") and len(word) - 1 >= MIN_WORD_LENGTH:
        variants.append(word[:-1])
    return variants


def _phrase_words(text: str) -> str:
    return " ".join(_PUNCTUATION_RE.sub(" ", text).split())


def _contains_either_way(query: str, name: str) -> bool:
    if min(len(query), len(name)) < MIN_SUBSTRING_LENGTH:
        return False
    return query in name or name in query


class CatalogIndex:
    """Read-mostly product index with atomic rebuilds."""

    def __init__(self) -> None:
        self._snapshot = _IndexSnapshot()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    def build(self, catalog: Mapping[str, Any] | None) -> CatalogStats:
        started = time.perf_counter()
        products: Dict[str, Product] = {}
        by_name: Dict[str, Product] = {}
        by_word: Dict[str, List[Product]] = {}
        by_barcode: Dict[str, Product] = {}
        by_category: Dict[str, List[Product]] = {}
        by_subcategory: Dict[str, List[Product]] = {}
        skipped = 0

        for category, subcategory, name, attributes in self._iter_records(catalog or {}):
            try:
                product = self._make_product(category, subcategory, name, attributes, len(products))
                if product.id in products:
                    raise ValidationError(
                        f"duplicate product id {product.id}",
                        reason="duplicate_product_id",
                    )
            except ValidationError as exc:
                skipped += 1
                logger.warning("Skipping catalog record %s/%s/%s: %s", category, subcategory, name, exc)
                continue

            products[product.id] = product
            normalized_name = normalize_search(product.name)
            by_name.setdefault(normalized_name, product)
            for word in dict.fromkeys(normalized_name.split(" ")):
                if len(word) >= MIN_WORD_LENGTH:
                    by_word.setdefault(word, []).append(product)
            if product.barcode:
                by_barcode[product.barcode] = product
            by_category.setdefault(product.category, []).append(product)
            by_subcategory.setdefault(
                f"{product.category}{PRODUCT_ID_SEPARATOR}{product.subcategory}", []
            ).append(product)

        stats = CatalogStats(
            total_products=len(products),
            total_categories=len(by_category),
            total_subcategories=len(by_subcategory),
            indexed_words=len(by_word),
            skipped_records=skipped,
        )
        self._snapshot = _IndexSnapshot(
            products=MappingProxyType(products),
            by_name=MappingProxyType(by_name),
            by_word=MappingProxyType({word: tuple(items) for word, items in by_word.items()}),
            by_barcode=MappingProxyType(by_barcode),
            by_category=MappingProxyType({key: tuple(items) for key, items in by_category.items()}),
            by_subcategory=MappingProxyType({key: tuple(items) for key, items in by_subcategory.items()}),
            stats=stats,
        )
        logger.info(
            "Catalog index built in %.1f ms: products=%d categories=%d subcategories=%d words=%d skipped=%d",
            (time.perf_counter() - started) * 1000,
            stats.total_products,
            stats.total_categories,
            stats.total_subcategories,
            stats.indexed_words,
            stats.skipped_records,
        )
        return stats

    @staticmethod
    def _iter_records(catalog: Mapping[str, Any]):
        for category, subcategories in catalog.items():
            if not isinstance(subcategories, Mapping):
                logger.warning("Skipping category %r: expected a mapping of subcategories", category)
                continue
            for subcategory, entries in subcategories.items():
                if not isinstance(entries, Mapping):
                    logger.warning("Skipping subcategory %r/%r: expected a mapping of products", category, subcategory)
                    continue
                for name, attributes in entries.items():
                    yield category, subcategory, name, attributes

    @staticmethod
    def _make_product(category: str, subcategory: str, name: str, attributes: Any, position: int) -> Product:
        try:
            return Product.from_record(category, subcategory, name, attributes, position=position)
        except (ValueError, TypeError, AttributeError) as exc:
            raise ValidationError(str(exc), reason="malformed_product") from exc

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def search(self, query: str | None) -> List[Product]:
        normalized = normalize_search(query)
        if not normalized:
            return []
        snapshot = self._snapshot
        scores: Dict[str, int] = {}

        exact = snapshot.by_name.get(normalized)
        if exact is not None:
            scores[exact.id] = EXACT_SCORE

        for word in normalized.split(" "):
            if len(word) < MIN_WORD_LENGTH:
                continue
            for product in self._products_for_word(snapshot, word):
                if product.id in scores:
                    scores[product.id] += WORD_REPEAT_BONUS
                else:
                    scores[product.id] = WORD_SCORE

        for name, product in snapshot.by_name.items():
            if _contains_either_way(normalized, name):
                if product.id in scores:
                    scores[product.id] += SUBSTRING_REPEAT_BONUS
                else:
                    scores[product.id] = SUBSTRING_SCORE

        ranked = sorted(
            scores.items(),
            key=lambda item: (-item[1], snapshot.products[item[0]].position),
        )
        return [snapshot.products[product_id] for product_id, _ in ranked]

    @staticmethod
    def _products_for_word(snapshot: _IndexSnapshot, word: str) -> List[Product]:
        seen: Dict[str, Product] = {}
        for variant in _word_variants(word):
            for product in snapshot.by_word.get(variant, ()):
                seen.setdefault(product.id, product)
        return list(seen.values())

    def get(self, product_id: str) -> Optional[Product]:
        return self._snapshot.products.get(product_id)

    def lookup_by_name(self, name: str) -> Optional[Product]:
        return self._snapshot.by_name.get(normalize_search(name))

    def named_in(self, text: str | None) -> List[Product]:
        """Products whose whole name appears as a phrase in ``text``; an exact name match stands alone."""

        exact = self.lookup_by_name(normalize_message(text))
        if exact is not None:
            return [exact]
        words = _phrase_words(normalize_search(text))
        if not words:
            return []
        padded = f" {words} "
        found: List[Product] = []
        for name, product in self._snapshot.by_name.items():
            key = _phrase_words(name)
            if key and f" {key} " in padded:
                found.append(product)
        return found

    def lookup_by_barcode(self, code: str | None) -> Optional[Product]:
        if not code:
            return None
        return self._snapshot.by_barcode.get(code.strip())

    def by_category(self, category: str) -> List[Product]:
        return list(self._snapshot.by_category.get(slugify_segment(category), ()))

    def by_subcategory(self, category: str, subcategory: str) -> List[Product]:
        key = f"{slugify_segment(category)}{PRODUCT_ID_SEPARATOR}{slugify_segment(subcategory)}"
        return list(self._snapshot.by_subcategory.get(key, ()))

    def all_products(self) -> List[Product]:
        return list(self._snapshot.products.values())

    def categories(self) -> List[str]:
        return list(self._snapshot.by_category.keys())

    def subcategories(self, category: str) -> List[str]:
        prefix = f"{slugify_segment(category)}{PRODUCT_ID_SEPARATOR}"
        return [
            key[len(prefix):]
            for key in self._snapshot.by_subcategory.keys()
            if key.startswith(prefix)
        ]

    def find_category(self, text: str | None) -> Optional[str]:
        """Resolve free text to a category key: exact, alias, then partial match."""

        wanted = slugify_segment(text)
        if not wanted:
            return None
        categories = self.categories()
        if wanted in categories:
            return wanted
        alias = CATEGORY_ALIASES.get(wanted)
        if alias and alias in categories:
            return alias
        if len(wanted) < MIN_SUBSTRING_LENGTH:
            return None
        for category in categories:
            if wanted in category or category in wanted:
                return category
        return None

    def category_summaries(self) -> List[CategorySummary]:
        snapshot = self._snapshot
        return [
            CategorySummary(
                name=category,
                display_name=category.replace("_", " ").title(),
                emoji=CATEGORY_EMOJIS.get(category, DEFAULT_CATEGORY_EMOJI),
                subcategories=self.subcategories(category),
                total_products=len(products),
            )
            for category, products in snapshot.by_category.items()
        ]

    def stats(self) -> CatalogStats:
        return self._snapshot.stats.model_copy()

    @property
    def is_empty(self) -> bool:
        return not self._snapshot.products
