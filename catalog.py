"""
Catalog lookup: the only source of names, prices and images for cart and order lines.
"""
import logging
from typing import Optional

from pymongo.errors import PyMongoError

from database import create_document, get_documents, to_str_id, utcnow
from errors import NotFoundError, UpstreamError, ValidationError
from schemas import CatalogEntry, Product, ProductUpdate

logger = logging.getLogger(__name__)

COLLECTION = "product"


class Catalog:
    def __init__(self, db):
        self.db = db

    def _find(self, product_id: str, active_only: bool = True) -> dict:
        query = {"product_id": product_id}
        if active_only:
            query["is_active"] = True
        try:
            doc = self.db[COLLECTION].find_one(query)
        except PyMongoError as e:
            raise UpstreamError(f"Catalog unavailable: {e}") from e
        if not doc:
            raise NotFoundError(f"Product {product_id} not found")
        return doc

    def lookup(self, product_id: str, variant_label: Optional[str] = None) -> CatalogEntry:
        doc = self._find(product_id)
        variants = doc.get("variants") or []
        price = int(doc.get("price_minor_units", 0))
        if variant_label is not None:
            match = next((v for v in variants if v.get("label") == variant_label), None)
            if variants and match is None:
                raise ValidationError(f"Unknown variant '{variant_label}' for product {product_id}")
            if match and match.get("price_minor_units") is not None:
                price = int(match["price_minor_units"])
        return CatalogEntry(
            product_id=doc["product_id"],
            name=doc.get("name", ""),
            unit_price_minor_units=price,
            image_ref=doc.get("image", ""),
            variant_labels=[v.get("label") for v in variants],
        )

    def get(self, product_id: str) -> dict:
        return to_str_id(self._find(product_id))

    def list_products(self, category: Optional[str] = None):
        query = {"is_active": True}
        if category:
            query["category"] = category
        return [to_str_id(d) for d in get_documents(self.db, COLLECTION, query, sort=[("product_id", 1)])]

    def create(self, product: Product) -> str:
        if self.db[COLLECTION].find_one({"product_id": product.product_id}):
            raise ValidationError(f"Product {product.product_id} already exists")
        data = product.model_dump()
        if not data.get("slug"):
            data["slug"] = slugify(product.name)
        return create_document(self.db, COLLECTION, data)

    def update(self, product_id: str, changes: ProductUpdate) -> dict:
        self._find(product_id, active_only=False)
        data = changes.model_dump(exclude_unset=True)
        if data.get("name"):
            data["slug"] = slugify(data["name"])
        data["updated_at"] = utcnow()
        self.db[COLLECTION].update_one({"product_id": product_id}, {"$set": data})
        return to_str_id(self._find(product_id, active_only=False))

    def deactivate(self, product_id: str):
        # soft delete; existing orders keep their snapshots
        self._find(product_id)
        self.db[COLLECTION].update_one(
            {"product_id": product_id}, {"$set": {"is_active": False, "updated_at": utcnow()}}
        )


def slugify(name: str) -> str:
    return "-".join(name.lower().split())


DEMO_PRODUCTS = [
    {
        "product_id": "7",
        "name": "Tidal Archive No. 7",
        "category": "archival",
        "description": "Museum-grade canvas of a low-tide estuary at dusk.",
        "price_minor_units": 26000,
        "image": "/images/products/tidal-archive-7.jpg",
        "variants": [
            {"label": "16x20", "price_minor_units": 26000},
            {"label": "24x36", "price_minor_units": 29000},
        ],
    },
    {
        "product_id": "12",
        "name": "Concrete Bloom",
        "category": "urban",
        "description": "Gallery-wrapped print of a flowering overpass.",
        "price_minor_units": 18000,
        "image": "/images/products/concrete-bloom.jpg",
        "variants": [
            {"label": "12x16"},
            {"label": "18x24", "price_minor_units": 22000},
        ],
    },
    {
        "product_id": "21",
        "name": "Static Portrait III",
        "category": "portrait",
        "description": "Limited edition experimental portrait on cotton canvas.",
        "price_minor_units": 41000,
        "image": "/images/products/static-portrait-3.jpg",
        "variants": [{"label": "30x40"}],
    },
]


def seed_products(db) -> int:
    """Insert demo canvases that are not present yet. Safe to call repeatedly."""
    existing = {d.get("product_id") for d in get_documents(db, COLLECTION)}
    inserted = 0
    for raw in DEMO_PRODUCTS:
        if raw["product_id"] in existing:
            continue
        create_document(db, COLLECTION, Product(slug=slugify(raw["name"]), **raw))
        inserted += 1
    if inserted:
        logger.info("Seeded %d demo products", inserted)
    return inserted
