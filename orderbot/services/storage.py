"""
JSON-file repositories for the catalog, orders, customers and settings.

Each file has its own ``asyncio.Lock``; read-modify-write paths hold it for
the whole cycle so concurrent finalizations never lose an update. Writes go
to a temp file in the same directory followed by ``os.replace``. File IO runs
in a worker thread. There is no read cache: every read after a write sees it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from copy import deepcopy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..models.orders import (
    BusinessProfile,
    Customer,
    CustomerStats,
    DiscountConfig,
    Order,
    OrderSettings,
)
from .error_handling import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.json"
ORDERS_FILE = "orders.json"
CUSTOMERS_FILE = "customers.json"
DISCOUNTS_FILE = "discounts.json"
BUSINESS_FILE = "business.json"
ORDER_SETTINGS_FILE = "order_settings.json"

ORDER_ID_PREFIX = "PED-"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def format_order_id(number: int) -> str:
    return f"{ORDER_ID_PREFIX}{number:03d}"


class JsonFileStore:
    """Locked, atomically replaced JSON documents under one directory."""

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, filename: str) -> asyncio.Lock:
        return self._locks.setdefault(filename, asyncio.Lock())

    def _load_json(self, filename: str, *, default: Any, strict: bool = False) -> Any:
        path = self.data_dir / filename
        if not path.exists():
            logger.info("Data file %s is missing, using defaults.", filename)
            return deepcopy(default)
        try:
            with path.open("r", encoding="utf-8") as fp:
                return json.load(fp)
        except json.JSONDecodeError as exc:
            if strict:
                raise ExternalServiceError(
                    f"{filename} is not valid JSON",
                    reason="storage_corrupted",
                ) from exc
            logger.warning("Failed to decode %s: %s", filename, exc)
            return deepcopy(default)
        except OSError as exc:
            raise ExternalServiceError(f"cannot read {filename}", reason="storage_read_failed") from exc

    def _write_json(self, filename: str, data: Any) -> None:
        path = self.data_dir / filename
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{filename}.", dir=path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fp:
                    json.dump(data, fp, ensure_ascii=False, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise ExternalServiceError(f"cannot write {filename}", reason="storage_write_failed") from exc

    async def read(self, filename: str, *, default: Any) -> Any:
        return await asyncio.to_thread(self._load_json, filename, default=default)

    async def write(self, filename: str, data: Any) -> None:
        async with self.lock(filename):
            await asyncio.to_thread(self._write_json, filename, data)

    @asynccontextmanager
    async def update(self, filename: str, *, default: Any) -> AsyncIterator[Any]:
        """Hold the file lock, yield the parsed document and write it back on success."""

        async with self.lock(filename):
            data = await asyncio.to_thread(self._load_json, filename, default=default, strict=True)
            yield data
            await asyncio.to_thread(self._write_json, filename, data)


class CatalogRepository:
    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def load(self) -> Dict[str, Any]:
        data = await self._store.read(CATALOG_FILE, default={})
        if not isinstance(data, dict):
            logger.warning("%s must hold a mapping of categories, ignoring it", CATALOG_FILE)
            return {}
        return data


class OrderRepository:
    """``orders.json``: ``{"last_number": int, "orders": [...]}``."""

    default = {"last_number": 0, "orders": []}

    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def append(self, build: Callable[[str], Order]) -> Order:
        """Reserve the next sequential id, build the order with it and persist both."""

        async with self._store.update(ORDERS_FILE, default=self.default) as data:
            number = int(data.get("last_number") or 0) + 1
            order = build(format_order_id(number))
            data["last_number"] = number
            data.setdefault("orders", []).append(order.model_dump(mode="json"))
        return order

    async def list_all(self) -> List[Order]:
        data = await self._store.read(ORDERS_FILE, default=self.default)
        return [Order.model_validate(item) for item in data.get("orders") or []]

    async def list_for_customer(self, customer_id: str, limit: Optional[int] = None) -> List[Order]:
        orders = [order for order in await self.list_all() if order.customer_id == customer_id]
        if limit is not None:
            orders = orders[-limit:]
        return orders

    async def last_order(self) -> Optional[Order]:
        orders = await self.list_all()
        return orders[-1] if orders else None

    async def last_number(self) -> int:
        data = await self._store.read(ORDERS_FILE, default=self.default)
        return int(data.get("last_number") or 0)


class CustomerRepository:
    """``customers.json``: ``{"customers": {id: {...}}, "stats": {...}}``."""

    default = {"customers": {}, "stats": CustomerStats().model_dump()}

    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def register_contact(self, customer_id: str, name: str | None) -> Tuple[Customer, bool]:
        """Create the customer on first contact, otherwise refresh name and last interaction."""

        now = utc_now_iso()
        async with self._store.update(CUSTOMERS_FILE, default=self.default) as data:
            customers = data.setdefault("customers", {})
            stats = data.setdefault("stats", CustomerStats().model_dump())
            raw = customers.get(customer_id)
            created = raw is None
            if created:
                customer = Customer(
                    id=customer_id,
                    name=name or customer_id,
                    registered_at=now,
                    last_interaction=now,
                )
                stats["total_customers"] = int(stats.get("total_customers") or 0) + 1
                logger.info("New customer registered: %s", customer_id)
            else:
                customer = Customer.model_validate(raw)
                updates: Dict[str, Any] = {"last_interaction": now}
                if name and name != customer.name:
                    updates["name"] = name
                customer = customer.model_copy(update=updates)
            customers[customer_id] = customer.model_dump(mode="json")
        return customer, created

    async def record_order(self, order: Order) -> Customer:
        async with self._store.update(CUSTOMERS_FILE, default=self.default) as data:
            customers = data.setdefault("customers", {})
            stats = data.setdefault("stats", CustomerStats().model_dump())
            raw = customers.get(order.customer_id)
            if raw is None:
                now = utc_now_iso()
                customer = Customer(
                    id=order.customer_id,
                    name=order.customer_name,
                    registered_at=now,
                    last_interaction=now,
                )
                stats["total_customers"] = int(stats.get("total_customers") or 0) + 1
            else:
                customer = Customer.model_validate(raw)
            customer = customer.model_copy(
                update={
                    "total_orders": customer.total_orders + 1,
                    "total_spent": customer.total_spent + order.total,
                    "orders": [*customer.orders, order],
                    "last_interaction": order.created_at,
                }
            )
            customers[order.customer_id] = customer.model_dump(mode="json")
            stats["total_orders"] = int(stats.get("total_orders") or 0) + 1
            stats["total_sold"] = int(stats.get("total_sold") or 0) + order.total
        return customer

    async def get(self, customer_id: str) -> Optional[Customer]:
        data = await self._store.read(CUSTOMERS_FILE, default=self.default)
        raw = (data.get("customers") or {}).get(customer_id)
        return Customer.model_validate(raw) if raw is not None else None

    async def stats(self) -> CustomerStats:
        data = await self._store.read(CUSTOMERS_FILE, default=self.default)
        return CustomerStats.model_validate(data.get("stats") or {})


class DiscountRepository:
    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def load(self) -> DiscountConfig:
        data = await self._store.read(DISCOUNTS_FILE, default={})
        try:
            return DiscountConfig.model_validate(data or {})
        except PydanticValidationError as exc:
            logger.warning("Invalid discount configuration, discounts disabled: %s", exc)
            return DiscountConfig()

    async def save(self, config: DiscountConfig) -> DiscountConfig:
        ordered = config.sorted_by_minimum()
        await self._store.write(DISCOUNTS_FILE, ordered.model_dump(mode="json"))
        return ordered

    async def save_raw(self, payload: Dict[str, Any]) -> DiscountConfig:
        try:
            config = DiscountConfig.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError("invalid discount rules", reason="invalid_discount_rule") from exc
        return await self.save(config)


class BusinessRepository:
    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def load(self) -> BusinessProfile:
        data = await self._store.read(BUSINESS_FILE, default={})
        return BusinessProfile.model_validate(data or {})

    async def update(self, **changes: Any) -> BusinessProfile:
        async with self._store.update(BUSINESS_FILE, default={}) as data:
            profile = BusinessProfile.model_validate(data or {}).model_copy(update=changes)
            data.clear()
            data.update(profile.model_dump(mode="json"))
        return profile


class OrderSettingsRepository:
    def __init__(self, store: JsonFileStore) -> None:
        self._store = store

    async def load(self) -> OrderSettings:
        data = await self._store.read(ORDER_SETTINGS_FILE, default={})
        return OrderSettings.model_validate(data or {})


class Storage:
    """All repositories sharing one data directory."""

    def __init__(self, data_dir: Path | str) -> None:
        self.files = JsonFileStore(data_dir)
        self.catalog = CatalogRepository(self.files)
        self.orders = OrderRepository(self.files)
        self.customers = CustomerRepository(self.files)
        self.discounts = DiscountRepository(self.files)
        self.business = BusinessRepository(self.files)
        self.order_settings = OrderSettingsRepository(self.files)
