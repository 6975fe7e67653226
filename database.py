"""
Document store for the storefront

`MongoStore` keeps every collection in MongoDB and runs multi-document
transactions through a client session. `MemoryStore` keeps the same
collections in process and is used when no DATABASE_URL is configured (local
runs and the test suite). Both return plain dicts with a string "id" key.
"""
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient, ReturnDocument

import config

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from storage as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_str_id(doc):
    if not doc:
        return doc
    if isinstance(doc, list):
        return [to_str_id(d) for d in doc]
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class MongoStore:
    def __init__(self, database):
        self.db = database
        self.client = database.client

    def ensure_indexes(self):
        self.db["user"].create_index([("username", ASCENDING)], unique=True)
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["cart"].create_index([("user_id", ASCENDING)], unique=True)
        self.db["coupon"].create_index([("code", ASCENDING)], unique=True)
        self.db["order"].create_index([("user_id", ASCENDING)])
        self.db["order"].create_index([("payment_intent_id", ASCENDING)], sparse=True)
        self.db["stock_movement"].create_index([("product_id", ASCENDING)])

    def run_in_transaction(self, callback: Callable):
        """Run callback(session) inside a transaction.

        The driver retries the callback on transient transaction errors, so
        it has to be safe to run more than once.
        """
        with self.client.start_session() as session:
            return session.with_transaction(callback)

    def _insert(self, collection: str, data: dict, session=None) -> str:
        doc = dict(data)
        doc.pop("id", None)
        doc["created_at"] = now_utc()
        doc["updated_at"] = now_utc()
        result = self.db[collection].insert_one(doc, session=session)
        return str(result.inserted_id)

    def _get(self, collection: str, ident: str, session=None) -> Optional[dict]:
        oid = _oid(ident)
        if oid is None:
            return None
        return to_str_id(self.db[collection].find_one({"_id": oid}, session=session))

    def _update(self, collection: str, ident: str, fields: dict, session=None) -> Optional[dict]:
        oid = _oid(ident)
        if oid is None:
            return None
        doc = self.db[collection].find_one_and_update(
            {"_id": oid},
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return to_str_id(doc)

    # Users
    def insert_user(self, doc: dict) -> str:
        return self._insert("user", doc)

    def get_user(self, user_id: str, session=None) -> Optional[dict]:
        return self._get("user", user_id, session=session)

    def find_user(self, username: str = None, email: str = None) -> Optional[dict]:
        clauses = []
        if username:
            clauses.append({"username": username})
        if email:
            clauses.append({"email": email})
        if not clauses:
            return None
        return to_str_id(self.db["user"].find_one({"$or": clauses}))

    def add_address(self, user_id: str, address: dict) -> Optional[dict]:
        entry = {"id": str(ObjectId()), **address}
        result = self.db["user"].update_one(
            {"_id": _oid(user_id)},
            {"$push": {"addresses": entry}, "$set": {"updated_at": now_utc()}},
        )
        return entry if result.matched_count else None

    def remove_address(self, user_id: str, address_id: str) -> bool:
        result = self.db["user"].update_one(
            {"_id": _oid(user_id)},
            {"$pull": {"addresses": {"id": address_id}}, "$set": {"updated_at": now_utc()}},
        )
        return result.modified_count == 1

    # Products
    def insert_product(self, doc: dict) -> str:
        return self._insert("product", doc)

    def get_product(self, product_id: str, session=None) -> Optional[dict]:
        return self._get("product", product_id, session=session)

    def list_products(self, q: str = None, limit: int = 100) -> List[dict]:
        filter_q = {}
        if q:
            filter_q["name"] = {"$regex": q, "$options": "i"}
        return to_str_id(list(self.db["product"].find(filter_q).limit(limit)))

    def decrement_stock(self, product_id: str, quantity: int, session=None) -> Optional[dict]:
        """Take quantity units if at least that many are on hand.

        Returns the updated product, or None when the guard did not match.
        """
        doc = self.db["product"].find_one_and_update(
            {"_id": _oid(product_id), "product_type": "simple", "quantity": {"$gte": quantity}},
            [
                {"$set": {"quantity": {"$subtract": ["$quantity", quantity]}, "updated_at": now_utc()}},
                {"$set": {"in_stock": {"$gt": ["$quantity", 0]}}},
            ],
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return to_str_id(doc)

    def restore_stock(self, product_id: str, quantity: int, session=None) -> Optional[dict]:
        doc = self.db["product"].find_one_and_update(
            {"_id": _oid(product_id), "product_type": "simple"},
            {"$inc": {"quantity": quantity}, "$set": {"in_stock": True, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return to_str_id(doc)

    def add_stock_movement(self, doc: dict, session=None) -> str:
        return self._insert("stock_movement", doc, session=session)

    def list_stock_movements(self, product_id: str) -> List[dict]:
        cursor = self.db["stock_movement"].find({"product_id": product_id}).sort("created_at", 1)
        return to_str_id(list(cursor))

    # Carts
    def get_cart(self, user_id: str, session=None) -> Optional[dict]:
        return to_str_id(self.db["cart"].find_one({"user_id": user_id}, session=session))

    def save_cart(self, cart: dict, session=None) -> dict:
        fields = {k: v for k, v in cart.items() if k not in ("id", "created_at")}
        fields["updated_at"] = now_utc()
        doc = self.db["cart"].find_one_and_update(
            {"user_id": cart["user_id"]},
            {"$set": fields, "$setOnInsert": {"created_at": now_utc()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return to_str_id(doc)

    # Coupons
    def insert_coupon(self, doc: dict) -> str:
        return self._insert("coupon", {**doc, "used_count": 0, "user_usage": {}})

    def get_coupon(self, coupon_id: str, session=None) -> Optional[dict]:
        return self._get("coupon", coupon_id, session=session)

    def get_coupon_by_code(self, code: str, session=None) -> Optional[dict]:
        return to_str_id(self.db["coupon"].find_one({"code": code.strip().upper()}, session=session))

    def list_coupons(self, active_only: bool = True) -> List[dict]:
        filt = {"is_active": True} if active_only else {}
        return to_str_id(list(self.db["coupon"].find(filt)))

    def update_coupon(self, coupon_id: str, fields: dict) -> Optional[dict]:
        return self._update("coupon", coupon_id, fields)

    def redeem_coupon(self, coupon_id: str, user_id: str, session=None) -> bool:
        """Consume one use of a coupon for a user in a single atomic update.

        The update only matches while both the global and the per-user limit
        still allow another use.
        """
        result = self.db["coupon"].update_one(
            {
                "_id": _oid(coupon_id),
                "$expr": {
                    "$and": [
                        {
                            "$or": [
                                {"$eq": [{"$ifNull": ["$usage_limit", None]}, None]},
                                {"$lt": ["$used_count", "$usage_limit"]},
                            ]
                        },
                        {"$lt": [{"$ifNull": [f"$user_usage.{user_id}", 0]}, "$per_user_limit"]},
                    ]
                },
            },
            {"$inc": {"used_count": 1, f"user_usage.{user_id}": 1}, "$set": {"updated_at": now_utc()}},
            session=session,
        )
        return result.modified_count == 1

    # Orders
    def insert_order(self, doc: dict, session=None) -> str:
        return self._insert("order", doc, session=session)

    def get_order(self, order_id: str, session=None) -> Optional[dict]:
        return self._get("order", order_id, session=session)

    def list_orders(self, user_id: str = None) -> List[dict]:
        filt = {"user_id": user_id} if user_id else {}
        return to_str_id(list(self.db["order"].find(filt).sort("created_at", -1)))

    def update_order(self, order_id: str, fields: dict, session=None) -> Optional[dict]:
        return self._update("order", order_id, fields, session=session)

    def find_order_by_payment_intent(self, payment_intent_id: str) -> Optional[dict]:
        return to_str_id(self.db["order"].find_one({"payment_intent_id": payment_intent_id}))


class MemoryStore:
    """In-process store with the same surface as MongoStore.

    Transactions hold a re-entrant lock for their whole duration and restore
    a snapshot of every collection when the callback raises.
    """

    COLLECTIONS = ("user", "product", "cart", "coupon", "order", "stock_movement")

    def __init__(self):
        self._lock = threading.RLock()
        self._data = {name: {} for name in self.COLLECTIONS}

    def run_in_transaction(self, callback: Callable):
        with self._lock:
            snapshot = copy.deepcopy(self._data)
            try:
                return callback(None)
            except Exception:
                self._data = snapshot
                raise

    def _insert(self, collection: str, data: dict) -> str:
        with self._lock:
            ident = str(ObjectId())
            doc = copy.deepcopy(data)
            doc.pop("id", None)
            doc["created_at"] = now_utc()
            doc["updated_at"] = now_utc()
            self._data[collection][ident] = doc
            return ident

    def _get(self, collection: str, ident: str) -> Optional[dict]:
        with self._lock:
            doc = self._data[collection].get(ident)
            if doc is None:
                return None
            return {"id": ident, **copy.deepcopy(doc)}

    def _find(self, collection: str, predicate: Callable) -> List[dict]:
        with self._lock:
            return [
                {"id": ident, **copy.deepcopy(doc)}
                for ident, doc in self._data[collection].items()
                if predicate(doc)
            ]

    def _update(self, collection: str, ident: str, fields: dict) -> Optional[dict]:
        with self._lock:
            doc = self._data[collection].get(ident)
            if doc is None:
                return None
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = now_utc()
            return self._get(collection, ident)

    # Users
    def insert_user(self, doc: dict) -> str:
        return self._insert("user", doc)

    def get_user(self, user_id: str, session=None) -> Optional[dict]:
        return self._get("user", user_id)

    def find_user(self, username: str = None, email: str = None) -> Optional[dict]:
        matches = self._find(
            "user",
            lambda d: (username and d.get("username") == username) or (email and d.get("email") == email),
        )
        return matches[0] if matches else None

    def add_address(self, user_id: str, address: dict) -> Optional[dict]:
        with self._lock:
            doc = self._data["user"].get(user_id)
            if doc is None:
                return None
            entry = {"id": str(ObjectId()), **address}
            doc.setdefault("addresses", []).append(copy.deepcopy(entry))
            return entry

    def remove_address(self, user_id: str, address_id: str) -> bool:
        with self._lock:
            doc = self._data["user"].get(user_id)
            if doc is None:
                return False
            before = len(doc.get("addresses", []))
            doc["addresses"] = [a for a in doc.get("addresses", []) if a.get("id") != address_id]
            return len(doc["addresses"]) != before

    # Products
    def insert_product(self, doc: dict) -> str:
        return self._insert("product", doc)

    def get_product(self, product_id: str, session=None) -> Optional[dict]:
        return self._get("product", product_id)

    def list_products(self, q: str = None, limit: int = 100) -> List[dict]:
        needle = q.lower() if q else None
        found = self._find("product", lambda d: needle is None or needle in d.get("name", "").lower())
        return found[:limit]

    def decrement_stock(self, product_id: str, quantity: int, session=None) -> Optional[dict]:
        with self._lock:
            doc = self._data["product"].get(product_id)
            if doc is None or doc.get("product_type") != "simple" or doc.get("quantity", 0) < quantity:
                return None
            doc["quantity"] -= quantity
            doc["in_stock"] = doc["quantity"] > 0
            doc["updated_at"] = now_utc()
            return self._get("product", product_id)

    def restore_stock(self, product_id: str, quantity: int, session=None) -> Optional[dict]:
        with self._lock:
            doc = self._data["product"].get(product_id)
            if doc is None or doc.get("product_type") != "simple":
                return None
            doc["quantity"] = doc.get("quantity", 0) + quantity
            doc["in_stock"] = True
            doc["updated_at"] = now_utc()
            return self._get("product", product_id)

    def add_stock_movement(self, doc: dict, session=None) -> str:
        return self._insert("stock_movement", doc)

    def list_stock_movements(self, product_id: str) -> List[dict]:
        found = self._find("stock_movement", lambda d: d.get("product_id") == product_id)
        return sorted(found, key=lambda d: d["created_at"])

    # Carts
    def get_cart(self, user_id: str, session=None) -> Optional[dict]:
        found = self._find("cart", lambda d: d.get("user_id") == user_id)
        return found[0] if found else None

    def save_cart(self, cart: dict, session=None) -> dict:
        with self._lock:
            fields = {k: v for k, v in cart.items() if k not in ("id", "created_at")}
            existing = self.get_cart(cart["user_id"])
            if existing is None:
                ident = self._insert("cart", fields)
                return self._get("cart", ident)
            return self._update("cart", existing["id"], fields)

    # Coupons
    def insert_coupon(self, doc: dict) -> str:
        return self._insert("coupon", {**doc, "used_count": 0, "user_usage": {}})

    def get_coupon(self, coupon_id: str, session=None) -> Optional[dict]:
        return self._get("coupon", coupon_id)

    def get_coupon_by_code(self, code: str, session=None) -> Optional[dict]:
        code = code.strip().upper()
        found = self._find("coupon", lambda d: d.get("code") == code)
        return found[0] if found else None

    def list_coupons(self, active_only: bool = True) -> List[dict]:
        return self._find("coupon", lambda d: d.get("is_active") or not active_only)

    def update_coupon(self, coupon_id: str, fields: dict) -> Optional[dict]:
        return self._update("coupon", coupon_id, fields)

    def redeem_coupon(self, coupon_id: str, user_id: str, session=None) -> bool:
        with self._lock:
            doc = self._data["coupon"].get(coupon_id)
            if doc is None:
                return False
            limit = doc.get("usage_limit")
            if limit is not None and doc.get("used_count", 0) >= limit:
                return False
            usage = doc.setdefault("user_usage", {})
            if usage.get(user_id, 0) >= doc.get("per_user_limit", 1):
                return False
            doc["used_count"] = doc.get("used_count", 0) + 1
            usage[user_id] = usage.get(user_id, 0) + 1
            doc["updated_at"] = now_utc()
            return True

    # Orders
    def insert_order(self, doc: dict, session=None) -> str:
        return self._insert("order", doc)

    def get_order(self, order_id: str, session=None) -> Optional[dict]:
        return self._get("order", order_id)

    def list_orders(self, user_id: str = None) -> List[dict]:
        found = self._find("order", lambda d: user_id is None or d.get("user_id") == user_id)
        return sorted(found, key=lambda d: d["created_at"], reverse=True)

    def update_order(self, order_id: str, fields: dict, session=None) -> Optional[dict]:
        return self._update("order", order_id, fields)

    def find_order_by_payment_intent(self, payment_intent_id: str) -> Optional[dict]:
        found = self._find("order", lambda d: d.get("payment_intent_id") == payment_intent_id)
        return found[0] if found else None


_store = None


def get_store():
    global _store
    if _store is None:
        if config.DATABASE_URL:
            client = MongoClient(config.DATABASE_URL, tz_aware=True)
            _store = MongoStore(client[config.DATABASE_NAME])
            _store.ensure_indexes()
            logger.info("Using MongoDB database %s", config.DATABASE_NAME)
        else:
            _store = MemoryStore()
            logger.warning("DATABASE_URL not set, using the in-memory store")
    return _store
