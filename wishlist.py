from typing import List

from bson import ObjectId

from errors import NotFound


def get_wishlist(db, user_id: str) -> List[str]:
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"wishlist": 1})
    if not user:
        raise NotFound("User not found")
    return user.get("wishlist", [])


def add_to_wishlist(db, user_id: str, product_id: str) -> List[str]:
    # product ids are not checked against the catalog
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$addToSet": {"wishlist": product_id}})
    return get_wishlist(db, user_id)


def remove_from_wishlist(db, user_id: str, product_id: str) -> List[str]:
    db["user"].update_one({"_id": ObjectId(user_id)}, {"$pull": {"wishlist": product_id}})
    return get_wishlist(db, user_id)
