"""
Database access layer for the storefront.
Uses asyncpg for async Postgres access.

Every query function returns plain dicts (NUMERIC columns as floats,
UUIDs as strings) so route handlers and pricing helpers never see
asyncpg records.
"""

import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any, Iterable
from contextlib import asynccontextmanager

import asyncpg

from .settings import DATABASE_URL


logger = logging.getLogger(__name__)

# Connection pool (initialized on startup)
_pool: Any = None


async def _init_connection(conn) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def init_pool() -> None:
    """Initialize the database connection pool. Call during app startup."""
    global _pool
    if DATABASE_URL:
        _pool = await asyncpg.create_pool(
            DATABASE_URL,
            min_size=2,
            max_size=10,
            init=_init_connection,
        )


async def close_pool() -> None:
    """Close the database connection pool. Call during app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None


def is_connected() -> bool:
    return _pool is not None


@asynccontextmanager
async def get_connection():
    """Get a database connection from the pool."""
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_pool() first.")
    async with _pool.acquire() as conn:
        yield conn


async def ping() -> bool:
    async with get_connection() as conn:
        return await conn.fetchval("SELECT 1") == 1


# --- Helpers ---


def _to_dict(row) -> Optional[dict]:
    if row is None:
        return None
    out = {}
    for key, value in row.items():
        if isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, uuid.UUID):
            value = str(value)
        out[key] = value
    return out


def _to_dicts(rows: Iterable) -> list[dict]:
    return [_to_dict(r) for r in rows]


def _valid_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, TypeError):
        return False


def _set_clause(data: dict, allowed: Iterable[str], start: int = 1) -> tuple[str, list]:
    """
    Build "col = $n, ..." for the whitelisted keys present in data.

    Raises ValueError when nothing updatable is present.
    """
    columns = [c for c in allowed if c in data]
    if not columns:
        raise ValueError("No valid fields provided for update")
    clause = ", ".join(f"{col} = ${i}" for i, col in enumerate(columns, start))
    return clause, [data[c] for c in columns]


def _insert_parts(data: dict, allowed: Iterable[str]) -> tuple[str, str, list]:
    columns = [c for c in allowed if c in data]
    if not columns:
        raise ValueError("No valid fields provided")
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return ", ".join(columns), placeholders, [data[c] for c in columns]


# --- User Operations ---


USER_PROFILE_COLUMNS = ("name", "phone_number", "date_of_birth", "gender", "image")


async def get_user_by_email(email: str) -> Optional[dict]:
    """Get a user by (case-insensitive) email."""
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT id, email, name, role, image, provider, provider_id,
                   phone_number, date_of_birth, gender, created_at
            FROM users
            WHERE email = $1
            """,
            email.lower(),
        )
        return _to_dict(row)


async def get_user_by_id(user_id: str) -> Optional[dict]:
    if not _valid_uuid(user_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT id, email, name, role, image, provider, provider_id,
                   phone_number, date_of_birth, gender, created_at
            FROM users
            WHERE id = $1
            """,
            user_id,
        )
        return _to_dict(row)


async def upsert_user(
    email: str,
    name: str,
    provider: str,
    provider_id: str,
    image: Optional[str] = None,
) -> dict:
    """
    Insert a user or refresh the login fields of an existing one.

    An existing name or image is kept when the new value is empty.
    """
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO users (email, name, image, provider, provider_id, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, NOW(), NOW())
            ON CONFLICT (email) DO UPDATE SET
                name = COALESCE(NULLIF(users.name, ''), EXCLUDED.name),
                image = COALESCE(EXCLUDED.image, users.image),
                provider = EXCLUDED.provider,
                provider_id = EXCLUDED.provider_id,
                updated_at = NOW()
            RETURNING id, email, name, role, image, provider, provider_id, created_at
            """,
            email.lower(),
            name,
            image,
            provider,
            provider_id,
        )
        return _to_dict(row)


async def update_user_profile(user_id: str, fields: dict) -> Optional[dict]:
    clause, values = _set_clause(fields, USER_PROFILE_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"""
            UPDATE users SET {clause}, updated_at = NOW()
            WHERE id = $1
            RETURNING id, email, name, role, image, phone_number, date_of_birth, gender
            """,
            user_id,
            *values,
        )
        return _to_dict(row)


async def list_users(limit: int = 50, offset: int = 0, search: Optional[str] = None) -> dict:
    """List users with their order counts. Returns {users, total}."""
    pattern = f"%{search.lower()}%" if search else None
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT u.id, u.email, u.name, u.role, u.provider, u.created_at,
                   COUNT(o.id) AS order_count,
                   COALESCE(SUM(o.total_amount) FILTER (WHERE o.payment_status = 'paid'), 0) AS total_spent
            FROM users u
            LEFT JOIN orders o ON o.user_id = u.id
            WHERE $3::text IS NULL OR LOWER(u.email) LIKE $3 OR LOWER(u.name) LIKE $3
            GROUP BY u.id
            ORDER BY u.created_at DESC
            LIMIT $1 OFFSET $2
            """,
            limit,
            offset,
            pattern,
        )
        total = await conn.fetchval(
            """
            SELECT COUNT(*) FROM users
            WHERE $1::text IS NULL OR LOWER(email) LIKE $1 OR LOWER(name) LIKE $1
            """,
            pattern,
        )
        return {"users": _to_dicts(rows), "total": total}


async def set_user_role(user_id: str, role: str) -> Optional[dict]:
    if not _valid_uuid(user_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            UPDATE users SET role = $2, updated_at = NOW()
            WHERE id = $1
            RETURNING id, email, name, role
            """,
            user_id,
            role,
        )
        return _to_dict(row)


async def set_user_role_by_email(email: str, role: str) -> Optional[dict]:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            UPDATE users SET role = $2, updated_at = NOW()
            WHERE email = $1
            RETURNING id, email, name, role
            """,
            email.lower(),
            role,
        )
        return _to_dict(row)


# --- Catalog Operations ---


CATEGORY_COLUMNS = ("name", "description", "image", "is_active", "position")
PRODUCT_COLUMNS = (
    "name", "short_description", "long_description", "category_id", "is_veg",
    "has_offer", "offer_percentage", "offer_up_to_price", "weight_options",
    "piece_options", "selling_type", "banner_image", "images", "is_active",
)

_PRODUCT_SELECT = """
    SELECT p.*, c.name AS category_name, c.description AS category_description
    FROM products p
    LEFT JOIN categories c ON c.id = p.category_id
"""


async def list_categories(active_only: bool = True) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT id, name, description, image, is_active, position, created_at
            FROM categories
            WHERE NOT $1 OR is_active
            ORDER BY position ASC, name ASC
            """,
            active_only,
        )
        return _to_dicts(rows)


async def get_category(category_id: str) -> Optional[dict]:
    if not _valid_uuid(category_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow("SELECT * FROM categories WHERE id = $1", category_id)
        return _to_dict(row)


async def create_category(data: dict) -> dict:
    columns, placeholders, values = _insert_parts(data, CATEGORY_COLUMNS)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"INSERT INTO categories ({columns}) VALUES ({placeholders}) RETURNING *",
            *values,
        )
        return _to_dict(row)


async def update_category(category_id: str, data: dict) -> Optional[dict]:
    if not _valid_uuid(category_id):
        return None
    clause, values = _set_clause(data, CATEGORY_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"UPDATE categories SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            category_id,
            *values,
        )
        return _to_dict(row)


async def delete_category(category_id: str) -> bool:
    if not _valid_uuid(category_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM categories WHERE id = $1", category_id)
        return result.endswith(" 1")


async def reorder_categories(category_ids: list[str]) -> None:
    """Persist the display order given as a list of category ids."""
    async with get_connection() as conn:
        async with conn.transaction():
            for position, category_id in enumerate(category_ids):
                await conn.execute(
                    "UPDATE categories SET position = $2, updated_at = NOW() WHERE id = $1",
                    category_id,
                    position,
                )


async def list_products(active_only: bool = True, category_id: Optional[str] = None) -> list[dict]:
    if category_id is not None and not _valid_uuid(category_id):
        return []
    async with get_connection() as conn:
        rows = await conn.fetch(
            _PRODUCT_SELECT
            + """
            WHERE (NOT $1 OR p.is_active)
              AND ($2::uuid IS NULL OR p.category_id = $2)
            ORDER BY p.created_at DESC
            """,
            active_only,
            category_id,
        )
        return _to_dicts(rows)


async def get_product(product_id: str) -> Optional[dict]:
    if not _valid_uuid(product_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow(_PRODUCT_SELECT + " WHERE p.id = $1", product_id)
        return _to_dict(row)


async def create_product(data: dict) -> dict:
    columns, placeholders, values = _insert_parts(data, PRODUCT_COLUMNS)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"INSERT INTO products ({columns}) VALUES ({placeholders}) RETURNING *",
            *values,
        )
        return _to_dict(row)


async def update_product(product_id: str, data: dict) -> Optional[dict]:
    if not _valid_uuid(product_id):
        return None
    clause, values = _set_clause(data, PRODUCT_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"UPDATE products SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            product_id,
            *values,
        )
        return _to_dict(row)


async def delete_product(product_id: str) -> bool:
    if not _valid_uuid(product_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM products WHERE id = $1", product_id)
        return result.endswith(" 1")


# --- Cart Operations ---


async def get_or_create_cart(user_id: str) -> dict:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO carts (user_id) VALUES ($1)
            ON CONFLICT (user_id) DO UPDATE SET updated_at = carts.updated_at
            RETURNING id, user_id, created_at, updated_at
            """,
            user_id,
        )
        return _to_dict(row)


async def list_cart_items(cart_id: str) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            "SELECT * FROM cart_items WHERE cart_id = $1 ORDER BY created_at ASC",
            cart_id,
        )
        return _to_dicts(rows)


async def add_cart_item(cart_id: str, item: dict) -> dict:
    """
    Add an item to a cart.

    An existing line with the same product, variant and order type has its
    quantity incremented instead of a second line being inserted.
    """
    async with get_connection() as conn:
        async with conn.transaction():
            existing = await conn.fetchrow(
                """
                SELECT id FROM cart_items
                WHERE cart_id = $1 AND product_id = $2 AND variant = $3 AND order_type = $4
                FOR UPDATE
                """,
                cart_id,
                item["product_id"],
                item["variant"],
                item["order_type"],
            )
            if existing:
                row = await conn.fetchrow(
                    """
                    UPDATE cart_items SET quantity = quantity + $2, updated_at = NOW()
                    WHERE id = $1
                    RETURNING *
                    """,
                    existing["id"],
                    item["quantity"],
                )
            else:
                row = await conn.fetchrow(
                    """
                    INSERT INTO cart_items (
                        cart_id, product_id, product_name, product_image, category,
                        variant, order_type, price, quantity, add_text_on_cake,
                        add_candles, add_knife, add_message_card, cake_text, gift_card_text
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    RETURNING *
                    """,
                    cart_id,
                    item["product_id"],
                    item["product_name"],
                    item["product_image"],
                    item["category"],
                    item["variant"],
                    item["order_type"],
                    item["price"],
                    item["quantity"],
                    item.get("add_text_on_cake", False),
                    item.get("add_candles", False),
                    item.get("add_knife", False),
                    item.get("add_message_card", False),
                    item.get("cake_text"),
                    item.get("gift_card_text"),
                )
            await conn.execute("UPDATE carts SET updated_at = NOW() WHERE id = $1", cart_id)
            return _to_dict(row)


async def set_cart_item_quantity(
    cart_id: str, product_id: str, quantity: int, variant: Optional[str] = None
) -> int:
    """
    Set the quantity of matching cart lines; 0 removes them.
    Returns the number of lines touched.
    """
    if quantity == 0:
        return await remove_cart_item(cart_id, product_id, variant)
    async with get_connection() as conn:
        result = await conn.execute(
            """
            UPDATE cart_items SET quantity = $3, updated_at = NOW()
            WHERE cart_id = $1 AND product_id = $2 AND ($4::text IS NULL OR variant = $4)
            """,
            cart_id,
            product_id,
            quantity,
            variant,
        )
        return int(result.split()[-1])


async def remove_cart_item(cart_id: str, product_id: str, variant: Optional[str] = None) -> int:
    async with get_connection() as conn:
        result = await conn.execute(
            """
            DELETE FROM cart_items
            WHERE cart_id = $1 AND product_id = $2 AND ($3::text IS NULL OR variant = $3)
            """,
            cart_id,
            product_id,
            variant,
        )
        return int(result.split()[-1])


async def clear_cart(cart_id: str) -> int:
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM cart_items WHERE cart_id = $1", cart_id)
        return int(result.split()[-1])


async def clear_cart_for_user(user_id: str) -> int:
    async with get_connection() as conn:
        result = await conn.execute(
            """
            DELETE FROM cart_items
            WHERE cart_id IN (SELECT id FROM carts WHERE user_id = $1)
            """,
            user_id,
        )
        return int(result.split()[-1])


async def merge_cart_items(cart_id: str, items: list[dict]) -> list[dict]:
    """
    Merge locally held cart lines into the stored cart.

    Lines are matched by product id and variant; quantities are summed.
    """
    async with get_connection() as conn:
        async with conn.transaction():
            for item in items:
                updated = await conn.execute(
                    """
                    UPDATE cart_items SET quantity = quantity + $4, updated_at = NOW()
                    WHERE cart_id = $1 AND product_id = $2 AND variant = $3
                    """,
                    cart_id,
                    item["product_id"],
                    item["variant"],
                    item["quantity"],
                )
                if updated.endswith(" 0"):
                    await conn.execute(
                        """
                        INSERT INTO cart_items (
                            cart_id, product_id, product_name, product_image, category,
                            variant, order_type, price, quantity
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                        """,
                        cart_id,
                        item["product_id"],
                        item["product_name"],
                        item["product_image"],
                        item["category"],
                        item["variant"],
                        item["order_type"],
                        item["price"],
                        item["quantity"],
                    )
            rows = await conn.fetch(
                "SELECT * FROM cart_items WHERE cart_id = $1 ORDER BY created_at ASC",
                cart_id,
            )
            return _to_dicts(rows)


# --- Favorites Operations ---


async def list_favorites(user_id: str) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            "SELECT * FROM favorites WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return _to_dicts(rows)


async def get_favorite(user_id: str, product_id: str) -> Optional[dict]:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM favorites WHERE user_id = $1 AND product_id = $2",
            user_id,
            product_id,
        )
        return _to_dict(row)


async def add_favorite(user_id: str, item: dict) -> dict:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO favorites (
                user_id, product_id, product_name, product_price, product_image,
                product_category, product_description, product_rating, is_veg
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            user_id,
            item["product_id"],
            item["product_name"],
            item["product_price"],
            item.get("product_image"),
            item.get("product_category"),
            item.get("product_description"),
            item.get("product_rating", 0),
            item.get("is_veg", True),
        )
        return _to_dict(row)


async def remove_favorite(user_id: str, product_id: str) -> bool:
    async with get_connection() as conn:
        result = await conn.execute(
            "DELETE FROM favorites WHERE user_id = $1 AND product_id = $2",
            user_id,
            product_id,
        )
        return not result.endswith(" 0")


# --- Address Operations ---


ADDRESS_COLUMNS = (
    "address_name", "full_address", "city", "state", "zip_code", "latitude",
    "longitude", "distance", "duration", "alternate_phone", "additional_details",
    "address_type", "is_default",
)


async def list_addresses(user_id: str) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM addresses WHERE user_id = $1
            ORDER BY is_default DESC, created_at DESC
            """,
            user_id,
        )
        return _to_dicts(rows)


async def get_address(user_id: str, address_id: str) -> Optional[dict]:
    if not _valid_uuid(address_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow(
            "SELECT * FROM addresses WHERE id = $1 AND user_id = $2",
            address_id,
            user_id,
        )
        return _to_dict(row)


async def create_address(user_id: str, data: dict) -> dict:
    """Insert an address; a new default address clears the previous default."""
    columns, placeholders, values = _insert_parts(data, ADDRESS_COLUMNS)
    async with get_connection() as conn:
        async with conn.transaction():
            if data.get("is_default"):
                await conn.execute(
                    "UPDATE addresses SET is_default = FALSE WHERE user_id = $1 AND is_default",
                    user_id,
                )
            row = await conn.fetchrow(
                f"""
                INSERT INTO addresses (user_id, {columns})
                VALUES ($1, {", ".join(f"${i + 1}" for i in range(1, len(values) + 1))})
                RETURNING *
                """,
                user_id,
                *values,
            )
            return _to_dict(row)


async def update_address(user_id: str, address_id: str, data: dict) -> Optional[dict]:
    if not _valid_uuid(address_id):
        return None
    clause, values = _set_clause(data, ADDRESS_COLUMNS, start=3)
    async with get_connection() as conn:
        async with conn.transaction():
            if data.get("is_default"):
                await conn.execute(
                    """
                    UPDATE addresses SET is_default = FALSE
                    WHERE user_id = $1 AND id <> $2 AND is_default
                    """,
                    user_id,
                    address_id,
                )
            row = await conn.fetchrow(
                f"""
                UPDATE addresses SET {clause}, updated_at = NOW()
                WHERE id = $1 AND user_id = $2
                RETURNING *
                """,
                address_id,
                user_id,
                *values,
            )
            return _to_dict(row)


async def delete_address(user_id: str, address_id: str) -> bool:
    if not _valid_uuid(address_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute(
            "DELETE FROM addresses WHERE id = $1 AND user_id = $2",
            address_id,
            user_id,
        )
        return result.endswith(" 1")


# --- Coupon Operations ---


COUPON_COLUMNS = (
    "code", "type", "value", "min_order_amount", "max_discount_cap", "usage_limit",
    "usage_per_user", "enable_usage_limit", "valid_from", "valid_until",
    "applicable_categories", "is_active",
)


async def list_coupons() -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch("SELECT * FROM coupons ORDER BY created_at DESC")
        return _to_dicts(rows)


async def list_active_coupons(now: datetime) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM coupons
            WHERE is_active AND valid_from <= $1 AND valid_until >= $1
            ORDER BY valid_until ASC
            """,
            now,
        )
        return _to_dicts(rows)


async def get_coupon(coupon_id: str) -> Optional[dict]:
    if not _valid_uuid(coupon_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow("SELECT * FROM coupons WHERE id = $1", coupon_id)
        return _to_dict(row)


async def get_coupon_by_code(code: str) -> Optional[dict]:
    async with get_connection() as conn:
        row = await conn.fetchrow("SELECT * FROM coupons WHERE code = $1", code.strip().upper())
        return _to_dict(row)


async def create_coupon(data: dict) -> dict:
    """Create a coupon. Raises asyncpg.UniqueViolationError on a duplicate code."""
    columns, placeholders, values = _insert_parts(data, COUPON_COLUMNS)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"INSERT INTO coupons ({columns}) VALUES ({placeholders}) RETURNING *",
            *values,
        )
        return _to_dict(row)


async def update_coupon(coupon_id: str, data: dict) -> Optional[dict]:
    if not _valid_uuid(coupon_id):
        return None
    clause, values = _set_clause(data, COUPON_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"UPDATE coupons SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            coupon_id,
            *values,
        )
        return _to_dict(row)


async def delete_coupon(coupon_id: str) -> bool:
    if not _valid_uuid(coupon_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM coupons WHERE id = $1", coupon_id)
        return result.endswith(" 1")


async def count_user_coupon_uses(user_id: str, code: str) -> int:
    """Orders placed by this user with the coupon, excluding failed payments."""
    async with get_connection() as conn:
        return await conn.fetchval(
            """
            SELECT COUNT(*) FROM orders
            WHERE user_id = $1 AND coupon_code = $2 AND payment_status <> 'failed'
            """,
            user_id,
            code.upper(),
        )


async def track_coupon_usage(coupon_id: str, order_value: float, conn=None) -> None:
    query = """
        UPDATE coupons SET
            times_used = times_used + 1,
            last_used_at = NOW(),
            total_revenue = total_revenue + $2,
            updated_at = NOW()
        WHERE id = $1
    """
    if conn is not None:
        await conn.execute(query, coupon_id, order_value)
        return
    async with get_connection() as own_conn:
        await own_conn.execute(query, coupon_id, order_value)


# --- Order Operations ---


ORDER_COLUMNS = (
    "user_id", "order_number", "status", "payment_status", "item_total",
    "delivery_charge", "discount_amount", "cgst", "sgst", "total_amount",
    "delivery_address_id", "delivery_address_text", "notes", "is_knife",
    "is_candle", "is_text_on_card", "text_on_card", "delivery_timing",
    "delivery_date", "delivery_time_slot", "contact_name", "contact_number",
    "contact_alternate_number", "is_coupon", "coupon_id", "coupon_code",
    "estimated_time_delivery", "distance", "duration", "delivery_zone",
    "payment_method", "payment_transaction_id",
)

ORDER_ITEM_COLUMNS = (
    "product_id", "product_name", "product_image", "product_description",
    "category", "quantity", "unit_price", "total_price", "variant",
    "customization_options", "cake_text", "cake_flavor", "cake_size",
    "cake_weight", "item_has_knife", "item_has_candle", "item_has_message_card",
    "item_message_card_text", "item_status",
)

ORDER_STATUS_COLUMNS = (
    "status", "delivery_person_name", "delivery_person_contact",
    "cooking_started_at", "ready_at", "picked_up_at", "delivered_at",
)


async def create_order_with_items(
    order: dict, items: list[dict], coupon_id: Optional[str] = None
) -> dict:
    """
    Insert an order, its items and (optionally) the coupon usage in one
    transaction. Nothing is persisted when any insert fails.
    """
    columns, placeholders, values = _insert_parts(order, ORDER_COLUMNS)
    async with get_connection() as conn:
        async with conn.transaction():
            order_row = await conn.fetchrow(
                f"INSERT INTO orders ({columns}) VALUES ({placeholders}) RETURNING *",
                *values,
            )
            for item in items:
                item_columns, _, item_values = _insert_parts(item, ORDER_ITEM_COLUMNS)
                item_placeholders = ", ".join(
                    f"${i}" for i in range(2, len(item_values) + 2)
                )
                await conn.execute(
                    f"""
                    INSERT INTO order_items (order_id, {item_columns})
                    VALUES ($1, {item_placeholders})
                    """,
                    order_row["id"],
                    *item_values,
                )
            if coupon_id:
                await track_coupon_usage(coupon_id, float(order["total_amount"]), conn=conn)
            return _to_dict(order_row)


async def get_order(order_id: str) -> Optional[dict]:
    if not _valid_uuid(order_id):
        return None
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT o.*, u.email AS user_email, u.name AS user_name
            FROM orders o
            JOIN users u ON u.id = o.user_id
            WHERE o.id = $1
            """,
            order_id,
        )
        return _to_dict(row)


async def get_order_items(order_id: str) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            "SELECT * FROM order_items WHERE order_id = $1 ORDER BY created_at ASC",
            order_id,
        )
        return _to_dicts(rows)


async def list_orders_for_user(user_id: str, limit: int = 50) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT o.*,
                   COALESCE(
                       (SELECT json_agg(json_build_object(
                            'product_name', i.product_name,
                            'product_image', i.product_image,
                            'quantity', i.quantity,
                            'total_price', i.total_price,
                            'variant', i.variant
                        ) ORDER BY i.created_at)
                        FROM order_items i WHERE i.order_id = o.id),
                       '[]'::json
                   ) AS items
            FROM orders o
            WHERE o.user_id = $1
            ORDER BY o.created_at DESC
            LIMIT $2
            """,
            user_id,
            limit,
        )
        return _to_dicts(rows)


async def list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """Admin order listing. Returns {orders, total}."""
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT o.id, o.order_number, o.status, o.payment_status, o.total_amount,
                   o.contact_name, o.contact_number, o.delivery_date, o.delivery_time_slot,
                   o.created_at, u.email AS user_email, u.name AS user_name,
                   (SELECT COUNT(*) FROM order_items i WHERE i.order_id = o.id) AS item_count
            FROM orders o
            JOIN users u ON u.id = o.user_id
            WHERE ($1::text IS NULL OR o.status = $1)
              AND ($2::text IS NULL OR o.payment_status = $2)
            ORDER BY o.created_at DESC
            LIMIT $3 OFFSET $4
            """,
            status,
            payment_status,
            limit,
            offset,
        )
        total = await conn.fetchval(
            """
            SELECT COUNT(*) FROM orders
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::text IS NULL OR payment_status = $2)
            """,
            status,
            payment_status,
        )
        return {"orders": _to_dicts(rows), "total": total}


async def update_order_status(order_id: str, fields: dict) -> Optional[dict]:
    if not _valid_uuid(order_id):
        return None
    clause, values = _set_clause(fields, ORDER_STATUS_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"UPDATE orders SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            order_id,
            *values,
        )
        return _to_dict(row)


async def set_order_review(order_id: str, rating: int, feedback: Optional[str]) -> Optional[dict]:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            UPDATE orders SET customer_rating = $2, customer_feedback = $3, updated_at = NOW()
            WHERE id = $1
            RETURNING id, order_number, customer_rating, customer_feedback
            """,
            order_id,
            rating,
            feedback,
        )
        return _to_dict(row)


async def list_reviews() -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT o.id, o.order_number, o.customer_rating, o.customer_feedback,
                   o.payment_status, o.updated_at, o.created_at,
                   u.name AS customer_name, u.email AS customer_email,
                   (SELECT i.product_name FROM order_items i
                    WHERE i.order_id = o.id ORDER BY i.created_at LIMIT 1) AS product_name
            FROM orders o
            JOIN users u ON u.id = o.user_id
            WHERE o.customer_rating IS NOT NULL
            ORDER BY o.updated_at DESC
            """
        )
        return _to_dicts(rows)


# --- Payment Operations ---


async def record_payment(
    razorpay_order_id: str,
    razorpay_payment_id: Optional[str],
    amount: float,
    payment_status: str,
    order_id: Optional[str] = None,
    currency: str = "INR",
    signature_verified: bool = False,
    webhook_received: bool = False,
    notes: Optional[dict] = None,
) -> dict:
    """Insert or refresh the payment row for a gateway payment id."""
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO payments (
                order_id, razorpay_order_id, razorpay_payment_id, amount, currency,
                payment_status, signature_verified, webhook_received, notes
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (razorpay_payment_id) DO UPDATE SET
                order_id = COALESCE(EXCLUDED.order_id, payments.order_id),
                payment_status = EXCLUDED.payment_status,
                signature_verified = payments.signature_verified OR EXCLUDED.signature_verified,
                webhook_received = payments.webhook_received OR EXCLUDED.webhook_received,
                updated_at = NOW()
            RETURNING *
            """,
            order_id,
            razorpay_order_id,
            razorpay_payment_id,
            amount,
            currency,
            payment_status,
            signature_verified,
            webhook_received,
            notes or {},
        )
        return _to_dict(row)


# --- Dashboard Queries ---


async def get_period_stats(start: Optional[datetime], end: datetime) -> dict:
    """Order count, paid revenue and new users in [start, end)."""
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT
                (SELECT COUNT(*) FROM orders
                 WHERE ($1::timestamptz IS NULL OR created_at >= $1) AND created_at < $2) AS orders,
                (SELECT COALESCE(SUM(total_amount), 0) FROM orders
                 WHERE payment_status = 'paid'
                   AND ($1::timestamptz IS NULL OR created_at >= $1) AND created_at < $2) AS revenue,
                (SELECT COUNT(*) FROM users
                 WHERE ($1::timestamptz IS NULL OR created_at >= $1) AND created_at < $2) AS new_users
            """,
            start,
            end,
        )
        return _to_dict(row)


async def get_recent_orders(limit: int = 5) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT o.id, o.order_number, o.status, o.payment_status, o.total_amount,
                   o.created_at, u.name AS customer_name, u.email AS customer_email
            FROM orders o
            JOIN users u ON u.id = o.user_id
            ORDER BY o.created_at DESC
            LIMIT $1
            """,
            limit,
        )
        return _to_dicts(rows)


async def get_top_products(start: Optional[datetime], end: datetime, limit: int = 3) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT i.product_id, MAX(i.product_name) AS product_name,
                   MAX(i.product_image) AS product_image,
                   SUM(i.quantity) AS quantity, SUM(i.total_price) AS revenue
            FROM order_items i
            JOIN orders o ON o.id = i.order_id
            WHERE ($1::timestamptz IS NULL OR o.created_at >= $1) AND o.created_at < $2
            GROUP BY i.product_id
            ORDER BY SUM(i.quantity) DESC
            LIMIT $3
            """,
            start,
            end,
            limit,
        )
        return _to_dicts(rows)


# --- Banner Operations ---


async def list_banners(
    banner_type: str, device_type: Optional[str] = None, active_only: bool = True
) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM banners
            WHERE type = $1
              AND ($2::text IS NULL OR device_type = $2)
              AND (NOT $3 OR is_active)
            ORDER BY device_type, position ASC
            """,
            banner_type,
            device_type,
            active_only,
        )
        return _to_dicts(rows)


async def upsert_banner(
    banner_type: str,
    device_type: str,
    position: int,
    image_url: str,
    redirect_url: Optional[str] = None,
    is_active: bool = True,
) -> dict:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            INSERT INTO banners (type, device_type, position, image_url, redirect_url, is_active)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (type, device_type, position) DO UPDATE SET
                image_url = EXCLUDED.image_url,
                redirect_url = EXCLUDED.redirect_url,
                is_active = EXCLUDED.is_active,
                updated_at = NOW()
            RETURNING *
            """,
            banner_type,
            device_type,
            position,
            image_url,
            redirect_url,
            is_active,
        )
        return _to_dict(row)


async def delete_banner(banner_id: str) -> bool:
    if not _valid_uuid(banner_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM banners WHERE id = $1", banner_id)
        return result.endswith(" 1")


# --- Tax Settings ---


async def get_active_tax_settings() -> Optional[dict]:
    async with get_connection() as conn:
        row = await conn.fetchrow(
            """
            SELECT id, cgst_rate, sgst_rate, updated_at FROM tax_settings
            WHERE is_active
            ORDER BY updated_at DESC
            LIMIT 1
            """
        )
        return _to_dict(row)


async def save_tax_settings(cgst_rate: float, sgst_rate: float) -> dict:
    """Update the active tax row, inserting one when none exists."""
    async with get_connection() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                UPDATE tax_settings SET cgst_rate = $1, sgst_rate = $2, updated_at = NOW()
                WHERE id = (
                    SELECT id FROM tax_settings WHERE is_active
                    ORDER BY updated_at DESC LIMIT 1
                )
                RETURNING id, cgst_rate, sgst_rate, updated_at
                """,
                cgst_rate,
                sgst_rate,
            )
            if row is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO tax_settings (cgst_rate, sgst_rate, is_active)
                    VALUES ($1, $2, TRUE)
                    RETURNING id, cgst_rate, sgst_rate, updated_at
                    """,
                    cgst_rate,
                    sgst_rate,
                )
            return _to_dict(row)


# --- Delivery Charge Rules ---


DELIVERY_CHARGE_COLUMNS = (
    "type", "order_value_threshold", "delivery_type", "fixed_price",
    "start_km", "end_km", "price", "is_active",
)


async def list_delivery_charges(active_only: bool = False) -> list[dict]:
    async with get_connection() as conn:
        rows = await conn.fetch(
            """
            SELECT * FROM delivery_charges
            WHERE NOT $1 OR is_active
            ORDER BY type, start_km NULLS FIRST, order_value_threshold NULLS FIRST
            """,
            active_only,
        )
        return _to_dicts(rows)


async def create_delivery_charge(data: dict) -> dict:
    columns, placeholders, values = _insert_parts(data, DELIVERY_CHARGE_COLUMNS)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"INSERT INTO delivery_charges ({columns}) VALUES ({placeholders}) RETURNING *",
            *values,
        )
        return _to_dict(row)


async def update_delivery_charge(rule_id: str, data: dict) -> Optional[dict]:
    if not _valid_uuid(rule_id):
        return None
    clause, values = _set_clause(data, DELIVERY_CHARGE_COLUMNS, start=2)
    async with get_connection() as conn:
        row = await conn.fetchrow(
            f"UPDATE delivery_charges SET {clause}, updated_at = NOW() WHERE id = $1 RETURNING *",
            rule_id,
            *values,
        )
        return _to_dict(row)


async def delete_delivery_charge(rule_id: str) -> bool:
    if not _valid_uuid(rule_id):
        return False
    async with get_connection() as conn:
        result = await conn.execute("DELETE FROM delivery_charges WHERE id = $1", rule_id)
        return result.endswith(" 1")
