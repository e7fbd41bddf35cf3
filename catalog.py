import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from errors import NotFound
from schemas import Review


def to_object_id(id_str: str, what: str = "Product") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def build_product_filter(
    keyword: Optional[str] = None,
    category: Optional[str] = None,
    color: Optional[str] = None,
    size: Optional[str] = None,
) -> dict:
    filt = {}
    if keyword:
        filt["name"] = {"$regex": re.escape(keyword), "$options": "i"}
    if category:
        filt["category"] = category
    # array fields match on membership
    if color:
        filt["colors"] = color
    if size:
        filt["sizes"] = size
    return filt


def get_product_or_404(db, product_id: str) -> dict:
    doc = db["product"].find_one({"_id": to_object_id(product_id)})
    if not doc:
        raise NotFound("Product not found")
    return doc


def add_review(db, product_id: str, user_id: str, rating: int, comment: Optional[str]) -> dict:
    review = Review(user_id=user_id, rating=rating, comment=comment, created_at=datetime.utcnow()).model_dump()
    res = db["product"].update_one(
        {"_id": to_object_id(product_id)},
        {"$push": {"reviews": review}, "$set": {"updated_at": datetime.utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return get_product_or_404(db, product_id)
