"""
Product catalog

Products are looked up by code. A code that is not stored yet is fetched
once from the product lookup collaborator and cached for good; admin sync
is the only path that overwrites a stored product.
"""

import logging
import os
import random
import time
from typing import Any, Dict, List, Optional, Protocol

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, paginate, serialize_doc, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from schemas import Product, ProductDescription

logger = logging.getLogger(__name__)

LOOKUP_DELAY_SECONDS = float(os.getenv("LOOKUP_DELAY_SECONDS", "0"))

RECOMMENDATION_REASONS = ["Top rated product", "Popular choice", "Trending now"]
DEFAULT_REASON = "You might like this"

PLACEHOLDER_IMAGES = [
    "https://img.ltwebstatic.com/images3_pi/2023/01/17/16739234953c8f8b8e5f8c8d8e8f8c8d8e8f8c8d.jpg",
    "https://img.ltwebstatic.com/images3_pi/2023/02/15/16765234953c8f8b8e5f8c8d8e8f8c8d8e8f8c8d.jpg",
]

SAMPLE_PRODUCTS = [
    {
        "code": "SW2301001",
        "name": "Casual Cotton T-Shirt",
        "price": 12.99,
        "original_price": 19.99,
        "image": PLACEHOLDER_IMAGES[0],
        "description": "Comfortable cotton t-shirt perfect for everyday wear",
        "category": "Tops",
        "sizes": ["XS", "S", "M", "L", "XL"],
        "colors": ["White", "Black", "Navy", "Pink"],
        "rating": 4.5,
        "reviews": 1247,
        "in_stock": True,
    },
    {
        "code": "SW2301002",
        "name": "High Waist Denim Jeans",
        "price": 24.99,
        "original_price": 39.99,
        "image": PLACEHOLDER_IMAGES[1],
        "description": "Trendy high-waist denim jeans with stretch fabric",
        "category": "Bottoms",
        "sizes": ["26", "27", "28", "29", "30", "31", "32"],
        "colors": ["Light Blue", "Dark Blue", "Black"],
        "rating": 4.3,
        "reviews": 892,
        "in_stock": True,
    },
    {
        "code": "SW2301003",
        "name": "Floral Summer Dress",
        "price": 18.99,
        "original_price": 29.99,
        "image": "https://img.ltwebstatic.com/images3_pi/2023/03/10/16783234953c8f8b8e5f8c8d8e8f8c8d8e8f8c8d.jpg",
        "description": "Beautiful floral print dress perfect for summer occasions",
        "category": "Dresses",
        "sizes": ["XS", "S", "M", "L", "XL"],
        "colors": ["Pink Floral", "Blue Floral", "Yellow Floral"],
        "rating": 4.7,
        "reviews": 654,
        "in_stock": True,
    },
]


# ---------- Lookup collaborator ----------

class ProductLookup(Protocol):
    def search_by_code(self, code: str) -> Optional[ProductDescription]:
        ...


class MockProductLookup:
    """Stand-in for a real product source: every code resolves to random placeholder data."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    def search_by_code(self, code: str) -> Optional[ProductDescription]:
        try:
            if self.delay:
                time.sleep(self.delay + random.random() * self.delay)
            return ProductDescription(
                title=f"Product {code}",
                price=round(random.uniform(10, 60), 2),
                original_price=round(random.uniform(60, 90), 2),
                images=list(PLACEHOLDER_IMAGES),
                description=f"High-quality product with excellent craftsmanship. Product code: {code}",
                sizes=["XS", "S", "M", "L", "XL"],
                colors=["Black", "White", "Navy", "Pink"],
                rating=round(random.uniform(3, 5), 1),
                rating_count=random.randint(100, 1100),
                available=random.random() > 0.1,
            )
        except Exception:
            logger.warning("Product lookup failed for code %s", code, exc_info=True)
            return None


product_lookup = MockProductLookup(delay=LOOKUP_DELAY_SECONDS)


def get_product_lookup() -> ProductLookup:
    return product_lookup


# ---------- Products ----------

def discount_percentage(price: float, original_price: Optional[float]) -> int:
    if original_price and original_price > price:
        return round((original_price - price) / original_price * 100)
    return 0


def serialize_product(doc: Dict[str, Any]) -> Dict[str, Any]:
    product = serialize_doc(doc)
    product["discount_percentage"] = discount_percentage(
        product.get("price", 0), product.get("original_price")
    )
    return product


def normalize_code(code: Optional[str]) -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError("Product code is required")
    if not 3 <= len(normalized) <= 20:
        raise ValidationError("Product code must be between 3 and 20 characters")
    return normalized


def product_from_description(code: str, description: ProductDescription) -> Product:
    return Product(
        code=code,
        name=description.title,
        price=description.price,
        original_price=description.original_price,
        image=description.images[0],
        images=description.images,
        description=description.description,
        category=description.category,
        sizes=description.sizes,
        colors=description.colors,
        rating=description.rating,
        reviews=description.rating_count or 0,
        in_stock=description.available,
    )


def find_by_code(db: Database, code: str, lookup: ProductLookup) -> Dict[str, Any]:
    code = normalize_code(code)
    existing = db["product"].find_one({"code": code})
    if existing:
        return existing

    description = lookup.search_by_code(code)
    if description is None:
        raise NotFoundError(f"No product found with code: {code}")

    product = product_from_description(code, description)
    try:
        create_document(db, "product", product.model_dump(exclude_none=True))
        logger.info("Cached product %s from lookup", code)
    except DuplicateKeyError:
        # Another request cached the same code first; theirs is kept.
        logger.info("Product %s was cached concurrently, using stored record", code)
    return db["product"].find_one({"code": code})


def get_product(db: Database, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def sync_products(db: Database, products: Optional[List[Dict[str, Any]]] = None) -> List[Dict[str, Any]]:
    """Upsert products keyed by code, overwriting whatever is stored."""
    synced = []
    for data in products if products is not None else SAMPLE_PRODUCTS:
        product = Product(**data).model_dump()
        now = utcnow()
        doc = db["product"].find_one_and_update(
            {"code": product["code"]},
            {"$set": {**product, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        synced.append(doc)
    logger.info("Synced %s products", len(synced))
    return synced


def featured_products(db: Database, page: int = 1, limit: int = 20):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    query = {"in_stock": True}
    cursor = (
        db["product"].find(query)
        .sort([("rating", DESCENDING), ("reviews", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [serialize_product(d) for d in cursor]
    total = db["product"].count_documents(query)
    return items, paginate(page, limit, total)


def recommendations(db: Database, limit: int = 10) -> List[Dict[str, Any]]:
    """Fixed-rule recommendations: best rated in-stock products first."""
    limit = min(max(limit, 1), 100)
    cursor = db["product"].find({"in_stock": True}).sort("rating", DESCENDING).limit(limit)
    recs = []
    for index, doc in enumerate(cursor):
        product = serialize_product(doc)
        recs.append({
            "id": f"rec_{product['id']}",
            "product": product,
            "reason": RECOMMENDATION_REASONS[index] if index < len(RECOMMENDATION_REASONS) else DEFAULT_REASON,
            "score": round(1 - index * 0.1, 2),
        })
    return recs
