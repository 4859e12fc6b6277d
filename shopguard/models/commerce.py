# shopguard/models/commerce.py

from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, Field


class ProductSnapshot(BaseModel):
    """Denormalized display copy of a `products` row, held only in local cache"""
    id: str
    name: str = "Product not found"
    brand: str = ""
    price: float = 0.0
    original_price: Optional[float] = None
    images: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    in_stock: Optional[bool] = None

    @property
    def image(self) -> str:
        return self.images[0] if self.images else ""

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ProductSnapshot":
        return cls(
            id=str(record["id"]),
            name=record.get("name") or "Product not found",
            brand=record.get("brand") or "",
            price=float(record.get("price") or 0),
            original_price=record.get("original_price"),
            images=list(record.get("images") or []),
            category=record.get("category"),
            in_stock=record.get("in_stock"),
        )

    @classmethod
    def missing(cls, product_id: str) -> "ProductSnapshot":
        return cls(id=product_id)


class CartItem(BaseModel):
    id: str
    product_id: str
    quantity: int = Field(default=1, ge=1)
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None
    price_snapshot: float = 0.0
    name: str = ""
    brand: str = ""
    image: str = ""

    @property
    def line_total(self) -> float:
        return self.price_snapshot * self.quantity

    def key(self) -> Tuple[str, Optional[str], Optional[str]]:
        """Uniqueness key within one user's cart"""
        return (self.product_id, self.selected_color, self.selected_size)

    @classmethod
    def from_records(
        cls,
        row: Dict[str, Any],
        product: Optional[ProductSnapshot]
    ) -> "CartItem":
        product = product or ProductSnapshot.missing(str(row["product_id"]))
        return cls(
            id=str(row["id"]),
            product_id=str(row["product_id"]),
            quantity=max(1, int(row.get("quantity") or 1)),
            selected_color=row.get("selected_color") or None,
            selected_size=row.get("selected_size") or None,
            price_snapshot=product.price,
            name=product.name,
            brand=product.brand,
            image=product.image,
        )


class FavoriteEntry(BaseModel):
    user_id: str
    product_id: str
    product: Optional[ProductSnapshot] = None
