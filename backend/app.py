import math
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import bcrypt
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_current_user,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException

load_dotenv()

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

TRUTHY_VALUES = {"1", "true", "yes", "on"}
FALSY_VALUES = {"0", "false", "no", "off"}


def create_app(config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``config`` overrides the values read from the environment. ``database``
    replaces the Flask-PyMongo connection with any pymongo-compatible
    database handle, which keeps every app instance isolated.
    """
    app = Flask(__name__, static_folder=None)

    # --- Configuration ---
    app.config["MONGO_URI"] = os.getenv("MONGODB_URI") or os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/abah_farm"
    )
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET") or os.getenv(
        "JWT_SECRET_KEY", "abahfarmsecret"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(days=7)
    app.config["ADMIN_EMAILS"] = os.getenv("ADMIN_EMAILS", "")
    bcrypt_rounds_raw = os.getenv("BCRYPT_ROUNDS", "12")
    try:
        app.config["BCRYPT_ROUNDS"] = min(max(int(bcrypt_rounds_raw), 4), 31)
    except (TypeError, ValueError):
        app.config["BCRYPT_ROUNDS"] = 12
    app.config["SEED_PRODUCTS"] = (
        os.getenv("SEED_PRODUCTS", "true").strip().lower() not in FALSY_VALUES
    )
    app.config["STATIC_FOLDER"] = os.getenv("STATIC_FOLDER") or os.path.join(
        PROJECT_ROOT, "public"
    )
    app.config["LOG_LEVEL"] = os.getenv("LOG_LEVEL", "INFO")

    if config:
        app.config.update(config)

    app.logger.setLevel(str(app.config["LOG_LEVEL"]).upper())

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(
        app,
        supports_credentials=bool(allowed_origins),
        origins=allowed_origins or "*",
    )

    jwt = JWTManager(app)
    if database is None:
        database = PyMongo(app).db
    db = database

    for collection_name, field in (
        ("users", "email"),
        ("products", "sku"),
        ("newsletter_subscribers", "email"),
    ):
        try:
            db[collection_name].create_index(field, unique=True)
        except PyMongoError as exc:
            app.logger.warning(
                "Unable to ensure unique index on %s.%s: %s",
                collection_name,
                field,
                exc,
            )

    email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    raw_admin_emails = app.config.get("ADMIN_EMAILS") or ""
    if isinstance(raw_admin_emails, str):
        raw_admin_emails = raw_admin_emails.split(",")
    admin_emails = {
        str(value).strip().lower() for value in raw_admin_emails if str(value).strip()
    }

    seed_products = [
        {
            "name": "Fresh Milk",
            "description": "Pure and natural milk directly from our farm.",
            "price": 3.5,
            "image": "/images/fresh-milk.jpg",
            "category": "milk",
            "sku": "ABAH-MILK-001",
        },
        {
            "name": "Organic Cheese",
            "description": "Delicious cheese made from high-quality dairy.",
            "price": 8.75,
            "image": "/images/organic-cheese.jpg",
            "category": "cheese",
            "sku": "ABAH-CHEESE-001",
        },
        {
            "name": "Farm Butter",
            "description": "Creamy butter produced with traditional methods.",
            "price": 5.25,
            "image": "/images/farm-butter.jpg",
            "category": "butter",
            "sku": "ABAH-BUTTER-001",
        },
    ]

    PRODUCT_CATEGORIES = ("milk", "cheese", "yogurt", "butter", "cream", "other")
    NUTRITION_FIELDS = ("calories", "protein", "fat", "carbs")
    ADDRESS_FIELDS = (
        ("street", "street"),
        ("city", "city"),
        ("state", "state"),
        ("zipCode", "zip_code"),
        ("country", "country"),
    )
    ORDER_STATUS_TRANSITIONS = {
        "processing": ("shipped", "cancelled"),
        "shipped": ("delivered", "cancelled"),
        "delivered": (),
        "cancelled": (),
    }
    PAYMENT_STATUS_TRANSITIONS = {
        "pending": ("completed", "failed"),
        "failed": ("pending", "completed"),
        "completed": ("refunded",),
        "refunded": (),
    }
    TOUR_STATUS_TRANSITIONS = {
        "pending": ("confirmed", "cancelled"),
        "confirmed": ("completed", "cancelled"),
        "completed": (),
        "cancelled": (),
    }
    POPULAR_PRODUCTS_LIMIT = 5
    RECENT_ORDERS_LIMIT = 5
    MAX_PASSWORD_BYTES = 72
    SEED_MARKER_ID = "product_seed"
    REVIEW_WRITE_ATTEMPTS = 5

    # --- Helpers ---

    def normalize_email(value: Optional[str]) -> str:
        return str(value or "").strip().lower()

    def is_valid_email(value: Optional[str]) -> bool:
        normalized = normalize_email(value)
        return bool(normalized and email_regex.match(normalized))

    def normalize_object_id_value(value):
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(str(value))
        except (InvalidId, TypeError):
            return None

    def read_json_payload() -> Dict:
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def format_timestamp(value) -> Optional[str]:
        return f"{value.isoformat()}Z" if isinstance(value, datetime) else None

    def parse_iso_date(value) -> Optional[datetime]:
        if isinstance(value, datetime):
            parsed = value
        else:
            candidate = str(value or "").strip()
            if not candidate:
                return None
            normalized = candidate.replace("Z", "+00:00")
            if re.fullmatch(r"\d{4}-\d{2}-\d{2}", candidate):
                normalized = f"{candidate}T00:00:00"
            try:
                parsed = datetime.fromisoformat(normalized)
            except ValueError:
                return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def parse_number(value) -> Optional[float]:
        if isinstance(value, bool) or value is None:
            return None
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            return None
        return numeric if math.isfinite(numeric) else None

    def parse_positive_int(value) -> Optional[int]:
        numeric = parse_number(value)
        if numeric is None or numeric != int(numeric) or numeric < 1:
            return None
        return int(numeric)

    def parse_bool(value) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUTHY_VALUES:
                return True
            if lowered in FALSY_VALUES:
                return False
        return None

    def parse_string_list(value) -> Optional[List[str]]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            return None
        return [str(entry).strip() for entry in value if str(entry or "").strip()]

    def collect_text_fields(payload: Dict, field_specs, partial: bool, fields: Dict):
        """Copy trimmed text values into ``fields``.

        ``field_specs`` holds ``(wire_key, stored_key, required_message)``
        triples; a falsy message marks the field optional. Returns the first
        validation message, or None.
        """
        for wire_key, stored_key, required_message in field_specs:
            if wire_key not in payload:
                if required_message and not partial:
                    return required_message
                continue
            raw_value = payload.get(wire_key)
            value = "" if raw_value is None else str(raw_value).strip()
            if not value and required_message:
                return required_message
            fields[stored_key] = value
        return None

    def check_status_transition(
        transitions: Dict[str, Tuple[str, ...]],
        current_value: Optional[str],
        requested_value,
        label: str,
    ):
        requested = str(requested_value or "").strip().lower()
        if requested not in transitions:
            return None, f"{label} must be one of: {', '.join(transitions)}."
        if current_value and requested != current_value:
            if requested not in transitions.get(current_value, ()):
                return (
                    None,
                    f"Cannot change {label.lower()} from {current_value} to {requested}.",
                )
        return requested, None

    def fetch_document(collection_name: str, identifier: str, label: str):
        object_id = normalize_object_id_value(identifier)
        if object_id is None:
            return None, (
                jsonify({"message": f"Invalid {label.lower()} identifier."}),
                400,
            )

        document = db[collection_name].find_one({"_id": object_id})
        if not document:
            return None, (jsonify({"message": f"{label} not found"}), 404)

        return document, None

    def apply_partial_update(collection_name: str, document, fields: Dict):
        fields["updated_at"] = datetime.utcnow()
        return db[collection_name].find_one_and_update(
            {"_id": document["_id"]},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def require_admin_user():
        user_document = get_current_user()
        if user_document and user_document.get("is_admin"):
            return user_document, None
        return None, (jsonify({"message": "Admin access required"}), 403)

    # Credentials

    def hash_password(password: str) -> bytes:
        return bcrypt.hashpw(
            password.encode("utf-8"),
            bcrypt.gensalt(rounds=app.config["BCRYPT_ROUNDS"]),
        )

    def verify_password(password: str, stored_hash) -> bool:
        if isinstance(stored_hash, str):
            stored_hash = stored_hash.encode("utf-8")
        if not stored_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), bytes(stored_hash))
        except ValueError:
            return False

    def issue_token(user_document) -> str:
        return create_access_token(identity=str(user_document["_id"]))

    def serialize_user_public(user_document) -> Dict:
        if not user_document:
            return {}
        return {
            "id": str(user_document.get("_id")),
            "name": user_document.get("name", "") or "",
            "email": user_document.get("email", "") or "",
            "isAdmin": bool(user_document.get("is_admin")),
        }

    @jwt.user_lookup_loader
    def load_token_user(_jwt_header, jwt_data):
        object_id = normalize_object_id_value(jwt_data.get("sub"))
        if object_id is None:
            return None
        return db.users.find_one({"_id": object_id})

    @jwt.user_lookup_error_loader
    def handle_missing_token_user(_jwt_header, _jwt_data):
        return jsonify({"message": "User not found"}), 401

    @jwt.unauthorized_loader
    def handle_missing_token(_reason):
        return jsonify({"message": "Authentication required"}), 401

    @jwt.invalid_token_loader
    def handle_invalid_token(_reason):
        return jsonify({"message": "Authentication failed"}), 401

    @jwt.expired_token_loader
    def handle_expired_token(_jwt_header, _jwt_data):
        return jsonify({"message": "Authentication failed"}), 401

    # Products

    def ensure_seed_products():
        """Seed the showcase catalog once per database.

        The marker in ``app_state`` survives later deletes, so an admin who
        empties the catalog does not get the showcase products back.
        """
        if not app.config.get("SEED_PRODUCTS"):
            return
        existing_marker = db.app_state.find_one_and_update(
            {"_id": SEED_MARKER_ID},
            {"$setOnInsert": {"seeded_at": datetime.utcnow()}},
            upsert=True,
        )
        if existing_marker is not None:
            return
        if db.products.count_documents({}) > 0:
            return

        timestamp = datetime.utcnow()
        documents = []
        for product in seed_products:
            documents.append(
                {
                    **product,
                    "in_stock": True,
                    "featured": True,
                    "allergens": ["milk"],
                    "ingredients": [],
                    "reviews": [],
                    "average_rating": 0,
                    "created_at": timestamp,
                    "updated_at": timestamp,
                }
            )

        try:
            db.products.insert_many(documents)
        except DuplicateKeyError:
            app.logger.info("Seed products were inserted concurrently; skipping.")

    try:
        ensure_seed_products()
    except PyMongoError as exc:
        app.logger.warning("Unable to seed showcase products: %s", exc)

    def normalize_nutritional_info(value):
        if not isinstance(value, dict):
            return None, "Nutritional info must be an object."
        normalized: Dict[str, float] = {}
        for field in NUTRITION_FIELDS:
            if value.get(field) is None:
                continue
            numeric = parse_number(value.get(field))
            if numeric is None or numeric < 0:
                return None, f"Nutritional {field} must be a non-negative number."
            normalized[field] = numeric
        return normalized, None

    def normalize_discount(value):
        if not isinstance(value, dict):
            return None, "Discount must be an object."
        is_discounted = parse_bool(value.get("isDiscounted", False))
        if is_discounted is None:
            return None, "Discount flag must be true or false."
        percentage = parse_number(value.get("percentage", 0))
        if percentage is None or not 0 <= percentage <= 100:
            return None, "Discount percentage must be between 0 and 100."
        valid_until = None
        if value.get("validUntil"):
            valid_until = parse_iso_date(value.get("validUntil"))
            if valid_until is None:
                return None, "Discount end date must be a valid date."
        return {
            "is_discounted": is_discounted,
            "percentage": percentage,
            "valid_until": valid_until,
        }, None

    def normalize_available_sizes(value):
        if not isinstance(value, list):
            return None, "Available sizes must be a list."
        sizes = []
        for entry in value:
            if not isinstance(entry, dict) or not str(entry.get("size") or "").strip():
                return None, "Each available size needs a size label."
            size = {"size": str(entry.get("size")).strip(), "in_stock": True}
            if entry.get("price") is not None:
                price_value = parse_number(entry.get("price"))
                if price_value is None or price_value < 0:
                    return None, "Size price must be a non-negative number."
                size["price"] = round(price_value, 2)
            if "inStock" in entry:
                in_stock = parse_bool(entry.get("inStock"))
                if in_stock is None:
                    return None, "Size stock flag must be true or false."
                size["in_stock"] = in_stock
            sizes.append(size)
        return sizes, None

    def normalize_product_payload(payload: Dict, partial: bool = False):
        fields: Dict[str, object] = {}
        error = collect_text_fields(
            payload,
            (
                ("name", "name", "Product name is required"),
                ("description", "description", "Product description is required"),
                ("image", "image", "Product image is required"),
                ("sku", "sku", "Product SKU is required"),
            ),
            partial,
            fields,
        )
        if error:
            return None, error

        if "price" in payload:
            price_value = parse_number(payload.get("price"))
            if price_value is None:
                return None, "Price must be a valid number."
            if price_value < 0:
                return None, "Price cannot be negative"
            fields["price"] = round(price_value, 2)
        elif not partial:
            return None, "Product price is required"

        if "category" in payload:
            category = str(payload.get("category") or "").strip().lower()
            if category not in PRODUCT_CATEGORIES:
                return None, f"Category must be one of: {', '.join(PRODUCT_CATEGORIES)}."
            fields["category"] = category
        elif not partial:
            return None, "Product category is required"

        for wire_key, stored_key, default in (
            ("inStock", "in_stock", True),
            ("featured", "featured", False),
        ):
            if wire_key in payload:
                flag = parse_bool(payload.get(wire_key))
                if flag is None:
                    return None, f"{wire_key} must be true or false."
                fields[stored_key] = flag
            elif not partial:
                fields[stored_key] = default

        for wire_key in ("allergens", "ingredients"):
            if wire_key in payload:
                values = parse_string_list(payload.get(wire_key))
                if values is None:
                    return None, f"{wire_key.capitalize()} must be a list of strings."
                fields[wire_key] = values
            elif not partial:
                fields[wire_key] = []

        for wire_key, stored_key, normalizer in (
            ("nutritionalInfo", "nutritional_info", normalize_nutritional_info),
            ("discount", "discount", normalize_discount),
            ("availableSizes", "available_sizes", normalize_available_sizes),
        ):
            if payload.get(wire_key) is None:
                continue
            normalized, error = normalizer(payload.get(wire_key))
            if error:
                return None, error
            fields[stored_key] = normalized

        return fields, None

    def serialize_review(review) -> Dict:
        user_id = review.get("user")
        return {
            "user": str(user_id) if user_id else None,
            "userName": review.get("user_name", "") or "",
            "rating": review.get("rating", 0),
            "comment": review.get("comment", "") or "",
            "date": format_timestamp(review.get("date")),
        }

    def serialize_product(product_document) -> Dict:
        if not product_document:
            return {}

        discount = product_document.get("discount") or {}
        nutritional_info = product_document.get("nutritional_info") or {}
        return {
            "id": str(product_document.get("_id")),
            "name": product_document.get("name", "") or "",
            "description": product_document.get("description", "") or "",
            "price": product_document.get("price", 0),
            "image": product_document.get("image", "") or "",
            "category": product_document.get("category", "") or "",
            "sku": product_document.get("sku", "") or "",
            "inStock": bool(product_document.get("in_stock", True)),
            "featured": bool(product_document.get("featured")),
            "nutritionalInfo": {
                field: nutritional_info.get(field) for field in NUTRITION_FIELDS
            },
            "allergens": list(product_document.get("allergens") or []),
            "ingredients": list(product_document.get("ingredients") or []),
            "discount": {
                "isDiscounted": bool(discount.get("is_discounted")),
                "percentage": discount.get("percentage", 0),
                "validUntil": format_timestamp(discount.get("valid_until")),
            },
            "availableSizes": [
                {
                    "size": size.get("size", ""),
                    "price": size.get("price"),
                    "inStock": bool(size.get("in_stock", True)),
                }
                for size in product_document.get("available_sizes") or []
            ],
            "reviews": [
                serialize_review(review)
                for review in product_document.get("reviews") or []
            ],
            "averageRating": product_document.get("average_rating", 0),
            "createdAt": format_timestamp(product_document.get("created_at")),
            "updatedAt": format_timestamp(product_document.get("updated_at")),
        }

    # Orders

    def normalize_shipping_address(value):
        if not isinstance(value, dict):
            return None, "Shipping address is required"
        address: Dict[str, str] = {}
        for wire_key, stored_key in ADDRESS_FIELDS:
            trimmed = str(value.get(wire_key) or "").strip()
            if not trimmed:
                return None, f"Shipping address {wire_key} is required"
            address[stored_key] = trimmed
        return address, None

    def normalize_line_items(value):
        if not isinstance(value, list) or not value:
            return None, "Order must contain at least one product."

        items = []
        for entry in value:
            if not isinstance(entry, dict):
                return None, "Each order line must name a product."
            product_id = normalize_object_id_value(
                entry.get("product") or entry.get("productId")
            )
            if product_id is None:
                return None, "Invalid product identifier in order."
            quantity = 1
            if entry.get("quantity") is not None:
                quantity = parse_positive_int(entry.get("quantity"))
                if quantity is None:
                    return None, "Quantity must be a positive whole number."
            items.append({"product": product_id, "quantity": quantity})

        requested_ids = list({item["product"] for item in items})
        known_ids = {
            document["_id"]
            for document in db.products.find({"_id": {"$in": requested_ids}}, {"_id": 1})
        }
        for item in items:
            if item["product"] not in known_ids:
                return None, f"Product not found: {item['product']}"
        return items, None

    def normalize_order_payload(payload: Dict, current=None):
        """Validate an order body. ``current`` is the stored order on update."""
        partial = current is not None
        fields: Dict[str, object] = {}

        if "products" in payload or not partial:
            items, error = normalize_line_items(payload.get("products"))
            if error:
                return None, error
            fields["products"] = items

        if "totalAmount" in payload or not partial:
            total_amount = parse_number(payload.get("totalAmount"))
            if total_amount is None or total_amount < 0:
                return None, "Total amount must be a non-negative number."
            fields["total_amount"] = round(total_amount, 2)

        if "shippingAddress" in payload or not partial:
            address, error = normalize_shipping_address(payload.get("shippingAddress"))
            if error:
                return None, error
            fields["shipping_address"] = address

        error = collect_text_fields(
            payload,
            (("paymentMethod", "payment_method", "Payment method is required"),),
            partial,
            fields,
        )
        if error:
            return None, error

        if not partial:
            fields["payment_status"] = "pending"
            fields["order_status"] = "processing"
            return fields, None

        for wire_key, stored_key, transitions, label in (
            ("orderStatus", "order_status", ORDER_STATUS_TRANSITIONS, "Order status"),
            (
                "paymentStatus",
                "payment_status",
                PAYMENT_STATUS_TRANSITIONS,
                "Payment status",
            ),
        ):
            if wire_key not in payload:
                continue
            status_value, error = check_status_transition(
                transitions, current.get(stored_key), payload.get(wire_key), label
            )
            if error:
                return None, error
            fields[stored_key] = status_value

        return fields, None

    def build_order_context(order_documents):
        user_ids = {
            document.get("user") for document in order_documents if document.get("user")
        }
        product_ids = {
            item.get("product")
            for document in order_documents
            for item in document.get("products") or []
            if item.get("product")
        }
        users = {}
        if user_ids:
            users = {
                user["_id"]: user
                for user in db.users.find(
                    {"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1}
                )
            }
        products = {}
        if product_ids:
            products = {
                product["_id"]: product
                for product in db.products.find(
                    {"_id": {"$in": list(product_ids)}}, {"name": 1, "price": 1}
                )
            }
        return users, products

    def summarize_product(product_document) -> Optional[Dict]:
        if not product_document:
            return None
        return {
            "id": str(product_document["_id"]),
            "name": product_document.get("name", "") or "",
            "price": product_document.get("price", 0),
        }

    def serialize_order(order_document, users=None, products=None) -> Dict:
        if not order_document:
            return {}

        users = users or {}
        products = products or {}
        owner = users.get(order_document.get("user"))
        address = order_document.get("shipping_address") or {}
        return {
            "id": str(order_document.get("_id")),
            "user": {
                "id": str(owner["_id"]),
                "name": owner.get("name", "") or "",
                "email": owner.get("email", "") or "",
            }
            if owner
            else None,
            "products": [
                {
                    "product": summarize_product(products.get(item.get("product"))),
                    "quantity": item.get("quantity", 1),
                }
                for item in order_document.get("products") or []
            ],
            "totalAmount": order_document.get("total_amount", 0),
            "shippingAddress": {
                wire_key: address.get(stored_key, "")
                for wire_key, stored_key in ADDRESS_FIELDS
            },
            "paymentMethod": order_document.get("payment_method", "") or "",
            "paymentStatus": order_document.get("payment_status", "") or "",
            "orderStatus": order_document.get("order_status", "") or "",
            "createdAt": format_timestamp(order_document.get("created_at")),
            "updatedAt": format_timestamp(order_document.get("updated_at")),
        }

    # Tour bookings, contact messages, newsletter

    def normalize_tour_booking_payload(payload: Dict, current=None):
        partial = current is not None
        fields: Dict[str, object] = {}
        if "groupSize" in payload and isinstance(payload.get("groupSize"), (int, float)):
            payload = {**payload, "groupSize": str(payload.get("groupSize"))}

        error = collect_text_fields(
            payload,
            (
                ("name", "name", "Name is required"),
                ("email", "email", "Email is required"),
                ("phone", "phone", "Phone number is required"),
                ("groupSize", "group_size", "Group size is required"),
                ("message", "message", None),
            ),
            partial,
            fields,
        )
        if error:
            return None, error
        if "email" in fields:
            if not is_valid_email(fields["email"]):
                return None, "Please provide a valid email address."
            fields["email"] = normalize_email(fields["email"])

        if "date" in payload or not partial:
            tour_date = parse_iso_date(payload.get("date"))
            if tour_date is None:
                return None, "Please provide a valid tour date."
            fields["date"] = tour_date

        if not partial:
            fields["status"] = "pending"
        elif "status" in payload:
            status_value, error = check_status_transition(
                TOUR_STATUS_TRANSITIONS,
                current.get("status"),
                payload.get("status"),
                "Booking status",
            )
            if error:
                return None, error
            fields["status"] = status_value

        return fields, None

    def serialize_tour_booking(booking_document) -> Dict:
        return {
            "id": str(booking_document.get("_id")),
            "name": booking_document.get("name", "") or "",
            "email": booking_document.get("email", "") or "",
            "phone": booking_document.get("phone", "") or "",
            "date": format_timestamp(booking_document.get("date")),
            "groupSize": booking_document.get("group_size", "") or "",
            "message": booking_document.get("message", "") or "",
            "status": booking_document.get("status", "") or "",
            "createdAt": format_timestamp(booking_document.get("created_at")),
        }

    def normalize_contact_payload(payload: Dict, partial: bool = False):
        fields: Dict[str, object] = {}
        error = collect_text_fields(
            payload,
            (
                ("name", "name", "Name is required"),
                ("email", "email", "Email is required"),
                ("subject", "subject", "Subject is required"),
                ("message", "message", "Message is required"),
            ),
            partial,
            fields,
        )
        if error:
            return None, error
        if "email" in fields:
            if not is_valid_email(fields["email"]):
                return None, "Please provide a valid email address."
            fields["email"] = normalize_email(fields["email"])

        if not partial:
            fields["read"] = False
        elif "read" in payload:
            read_flag = parse_bool(payload.get("read"))
            if read_flag is None:
                return None, "read must be true or false."
            fields["read"] = read_flag

        return fields, None

    def serialize_contact_message(message_document) -> Dict:
        return {
            "id": str(message_document.get("_id")),
            "name": message_document.get("name", "") or "",
            "email": message_document.get("email", "") or "",
            "subject": message_document.get("subject", "") or "",
            "message": message_document.get("message", "") or "",
            "read": bool(message_document.get("read")),
            "createdAt": format_timestamp(message_document.get("created_at")),
        }

    def serialize_subscriber(subscriber_document) -> Dict:
        return {
            "id": str(subscriber_document.get("_id")),
            "email": subscriber_document.get("email", "") or "",
            "active": bool(subscriber_document.get("active")),
            "createdAt": format_timestamp(subscriber_document.get("created_at")),
        }

    # --- Error handlers ---

    @app.errorhandler(DuplicateKeyError)
    def handle_duplicate_key(exc):
        app.logger.info("Rejected duplicate key: %s", exc)
        return jsonify({"message": "A record with this value already exists."}), 400

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        return jsonify({"message": exc.description or exc.name}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_exception(exc):
        app.logger.exception("Unhandled error while serving %s", request.path)
        return jsonify({"message": "Internal server error"}), 500

    # --- ROUTES ---

    # Auth
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = read_json_payload()
        name = str(payload.get("name") or "").strip()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not name or not email or not password:
            return (
                jsonify({"message": "Name, email, and password are required."}),
                400,
            )
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return (
                jsonify(
                    {"message": f"Password must be at most {MAX_PASSWORD_BYTES} bytes."}
                ),
                400,
            )

        if db.users.find_one({"email": email}):
            return jsonify({"message": "User already exists"}), 400

        user_document = {
            "name": name,
            "email": email,
            "password": hash_password(password),
            "is_admin": email in admin_emails,
            "created_at": datetime.utcnow(),
        }
        try:
            db.users.insert_one(user_document)
        except DuplicateKeyError:
            return jsonify({"message": "User already exists"}), 400

        app.logger.info(
            "Registered %s account for %s",
            "admin" if user_document["is_admin"] else "standard",
            email,
        )

        return (
            jsonify(
                {
                    "token": issue_token(user_document),
                    "user": serialize_user_public(user_document),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = read_json_payload()
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password") or "")

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        user = db.users.find_one({"email": email})
        if not user or not verify_password(password, user.get("password")):
            app.logger.info("Failed sign-in attempt for %s", email)
            return jsonify({"message": "Invalid credentials"}), 400

        return jsonify({"token": issue_token(user), "user": serialize_user_public(user)})

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def get_me():
        return jsonify(serialize_user_public(get_current_user()))

    # Products
    @app.route("/api/products", methods=["GET"])
    def list_products():
        query: Dict[str, object] = {}
        category = str(request.args.get("category") or "").strip().lower()
        if category:
            query["category"] = category
        featured = parse_bool(request.args.get("featured"))
        if featured is not None:
            query["featured"] = featured

        product_docs = db.products.find(query).sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_product(document) for document in product_docs])

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        product_document, load_error = fetch_document("products", product_id, "Product")
        if load_error:
            return load_error
        return jsonify(serialize_product(product_document))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        fields, error = normalize_product_payload(read_json_payload())
        if error:
            return jsonify({"message": error}), 400

        timestamp = datetime.utcnow()
        product_document = {
            **fields,
            "reviews": [],
            "average_rating": 0,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        try:
            db.products.insert_one(product_document)
        except DuplicateKeyError:
            return jsonify({"message": "A product with this SKU already exists."}), 400

        app.logger.info(
            "%s created product %s (%s)",
            admin_user.get("email"),
            product_document["_id"],
            product_document.get("sku"),
        )
        return jsonify(serialize_product(product_document)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_document("products", product_id, "Product")
        if load_error:
            return load_error

        fields, error = normalize_product_payload(read_json_payload(), partial=True)
        if error:
            return jsonify({"message": error}), 400

        try:
            updated = apply_partial_update("products", product_document, fields)
        except DuplicateKeyError:
            return jsonify({"message": "A product with this SKU already exists."}), 400
        if not updated:
            return jsonify({"message": "Product not found"}), 404

        app.logger.info("%s updated product %s", admin_user.get("email"), product_id)
        return jsonify(serialize_product(updated))

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        product_document, load_error = fetch_document("products", product_id, "Product")
        if load_error:
            return load_error

        result = db.products.delete_one({"_id": product_document["_id"]})
        if not result.deleted_count:
            return jsonify({"message": "Product not found"}), 404

        app.logger.info("%s deleted product %s", admin_user.get("email"), product_id)
        return jsonify({"message": "Product deleted successfully"})

    @app.route("/api/products/<product_id>/reviews", methods=["POST"])
    @jwt_required()
    def add_product_review(product_id: str):
        product_document, load_error = fetch_document("products", product_id, "Product")
        if load_error:
            return load_error

        payload = read_json_payload()
        rating = parse_positive_int(payload.get("rating"))
        if rating is None or rating > 5:
            return (
                jsonify({"message": "Rating must be a whole number between 1 and 5."}),
                400,
            )

        reviewer = get_current_user()
        review = {
            "user": reviewer["_id"],
            "user_name": reviewer.get("name", "") or "",
            "rating": rating,
            "comment": str(payload.get("comment") or "").strip(),
            "date": datetime.utcnow(),
        }
        # Push and average go out in one write guarded by the review count it
        # was computed from; a concurrent review makes it miss and retry.
        current = product_document
        for attempt in range(REVIEW_WRITE_ATTEMPTS):
            if attempt:
                current = db.products.find_one({"_id": product_document["_id"]})
                if not current:
                    return jsonify({"message": "Product not found"}), 404

            stored_reviews = current.get("reviews")
            ratings = [entry.get("rating", 0) for entry in stored_reviews or []]
            ratings.append(rating)
            review_guard = (
                {"reviews": {"$size": len(stored_reviews)}}
                if isinstance(stored_reviews, list)
                else {"reviews": {"$exists": False}}
            )
            updated = db.products.find_one_and_update(
                {"_id": product_document["_id"], **review_guard},
                {
                    "$push": {"reviews": review},
                    "$set": {
                        "average_rating": round(sum(ratings) / len(ratings), 2),
                        "updated_at": datetime.utcnow(),
                    },
                },
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                return jsonify(serialize_product(updated)), 201

        app.logger.warning(
            "Gave up saving review for product %s after %d conflicting writes",
            product_id,
            REVIEW_WRITE_ATTEMPTS,
        )
        return (
            jsonify(
                {
                    "message": "The product changed while saving your review. Please try again."
                }
            ),
            409,
        )

    # Orders
    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        owner = get_current_user()
        fields, error = normalize_order_payload(read_json_payload())
        if error:
            return jsonify({"message": error}), 400

        timestamp = datetime.utcnow()
        order_document = {
            **fields,
            "user": owner["_id"],
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        db.orders.insert_one(order_document)

        app.logger.info(
            "Order %s placed by %s for %.2f",
            order_document["_id"],
            owner.get("email"),
            order_document["total_amount"],
        )
        users, products = build_order_context([order_document])
        return jsonify(serialize_order(order_document, users, products)), 201

    @app.route("/api/orders", methods=["GET"])
    @jwt_required()
    def list_orders():
        user_document = get_current_user()
        query = {} if user_document.get("is_admin") else {"user": user_document["_id"]}

        order_docs = list(db.orders.find(query).sort([("created_at", -1), ("_id", -1)]))
        users, products = build_order_context(order_docs)
        return jsonify(
            [serialize_order(document, users, products) for document in order_docs]
        )

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order_detail(order_id: str):
        order_document, load_error = fetch_document("orders", order_id, "Order")
        if load_error:
            return load_error

        user_document = get_current_user()
        if not user_document.get("is_admin") and order_document.get(
            "user"
        ) != user_document["_id"]:
            return jsonify({"message": "Not authorized"}), 403

        users, products = build_order_context([order_document])
        return jsonify(serialize_order(order_document, users, products))

    @app.route("/api/orders/<order_id>", methods=["PUT"])
    @jwt_required()
    def update_order(order_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        order_document, load_error = fetch_document("orders", order_id, "Order")
        if load_error:
            return load_error

        fields, error = normalize_order_payload(read_json_payload(), current=order_document)
        if error:
            return jsonify({"message": error}), 400

        updated = apply_partial_update("orders", order_document, fields)
        if not updated:
            return jsonify({"message": "Order not found"}), 404

        app.logger.info(
            "%s updated order %s: %s",
            admin_user.get("email"),
            order_id,
            ", ".join(sorted(key for key in fields if key != "updated_at")) or "no fields",
        )
        users, products = build_order_context([updated])
        return jsonify(serialize_order(updated, users, products))

    # Tour bookings
    @app.route("/api/tour-bookings", methods=["POST"])
    def create_tour_booking():
        fields, error = normalize_tour_booking_payload(read_json_payload())
        if error:
            return jsonify({"message": error}), 400

        booking_document = {**fields, "created_at": datetime.utcnow()}
        db.tour_bookings.insert_one(booking_document)
        app.logger.info(
            "Tour booking %s requested for %s",
            booking_document["_id"],
            booking_document["date"].date().isoformat(),
        )
        return jsonify(serialize_tour_booking(booking_document)), 201

    @app.route("/api/tour-bookings", methods=["GET"])
    @jwt_required()
    def list_tour_bookings():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        cursor = db.tour_bookings.find().sort([("date", 1), ("_id", 1)])
        return jsonify([serialize_tour_booking(document) for document in cursor])

    @app.route("/api/tour-bookings/<booking_id>", methods=["PUT"])
    @jwt_required()
    def update_tour_booking(booking_id: str):
        admin_user, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        booking_document, load_error = fetch_document(
            "tour_bookings", booking_id, "Booking"
        )
        if load_error:
            return load_error

        fields, error = normalize_tour_booking_payload(
            read_json_payload(), current=booking_document
        )
        if error:
            return jsonify({"message": error}), 400

        updated = apply_partial_update("tour_bookings", booking_document, fields)
        if not updated:
            return jsonify({"message": "Booking not found"}), 404

        app.logger.info("%s updated tour booking %s", admin_user.get("email"), booking_id)
        return jsonify(serialize_tour_booking(updated))

    # Contact messages
    @app.route("/api/contact", methods=["POST"])
    def create_contact_message():
        fields, error = normalize_contact_payload(read_json_payload())
        if error:
            return jsonify({"message": error}), 400

        db.contact_messages.insert_one({**fields, "created_at": datetime.utcnow()})
        return jsonify({"message": "Message sent successfully"}), 201

    @app.route("/api/contact", methods=["GET"])
    @jwt_required()
    def list_contact_messages():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        cursor = db.contact_messages.find().sort([("created_at", -1), ("_id", -1)])
        return jsonify([serialize_contact_message(document) for document in cursor])

    @app.route("/api/contact/<message_id>", methods=["PUT"])
    @jwt_required()
    def update_contact_message(message_id: str):
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        message_document, load_error = fetch_document(
            "contact_messages", message_id, "Message"
        )
        if load_error:
            return load_error

        fields, error = normalize_contact_payload(read_json_payload(), partial=True)
        if error:
            return jsonify({"message": error}), 400

        updated = apply_partial_update("contact_messages", message_document, fields)
        if not updated:
            return jsonify({"message": "Message not found"}), 404
        return jsonify(serialize_contact_message(updated))

    # Newsletter
    @app.route("/api/newsletter", methods=["POST"])
    def subscribe_newsletter():
        email = normalize_email(read_json_payload().get("email"))
        if not is_valid_email(email):
            return jsonify({"message": "Please provide a valid email address."}), 400

        existing_subscriber = db.newsletter_subscribers.find_one({"email": email})
        if existing_subscriber:
            if existing_subscriber.get("active"):
                return jsonify({"message": "Email already subscribed"}), 400
            db.newsletter_subscribers.update_one(
                {"_id": existing_subscriber["_id"]}, {"$set": {"active": True}}
            )
            return jsonify({"message": "Subscription reactivated successfully"})

        try:
            db.newsletter_subscribers.insert_one(
                {"email": email, "active": True, "created_at": datetime.utcnow()}
            )
        except DuplicateKeyError:
            return jsonify({"message": "Email already subscribed"}), 400

        return jsonify({"message": "Subscribed successfully"}), 201

    @app.route("/api/newsletter/unsubscribe", methods=["POST"])
    def unsubscribe_newsletter():
        email = normalize_email(read_json_payload().get("email"))
        if not email:
            return jsonify({"message": "Email is required"}), 400

        result = db.newsletter_subscribers.update_one(
            {"email": email}, {"$set": {"active": False}}
        )
        if not result.matched_count:
            return jsonify({"message": "Subscription not found"}), 404

        return jsonify({"message": "Unsubscribed successfully"})

    @app.route("/api/newsletter/subscribers", methods=["GET"])
    @jwt_required()
    def list_newsletter_subscribers():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        cursor = db.newsletter_subscribers.find({"active": True}).sort(
            [("created_at", -1), ("_id", -1)]
        )
        return jsonify([serialize_subscriber(document) for document in cursor])

    # --- Admin Routes ---

    @app.route("/api/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        _, admin_error = require_admin_user()
        if admin_error:
            return admin_error

        counts = {
            "products": db.products.count_documents({}),
            "users": db.users.count_documents({}),
            "orders": db.orders.count_documents({}),
            "unreadMessages": db.contact_messages.count_documents({"read": False}),
            "pendingTours": db.tour_bookings.count_documents({"status": "pending"}),
            "subscribers": db.newsletter_subscribers.count_documents({"active": True}),
        }

        revenue_rows = list(
            db.orders.aggregate(
                [
                    {"$match": {"payment_status": "completed"}},
                    {
                        "$group": {
                            "_id": None,
                            "total": {"$sum": "$total_amount"},
                            "order_count": {"$sum": 1},
                        }
                    },
                ]
            )
        )
        revenue = {"total": 0, "orderCount": 0}
        if revenue_rows:
            revenue = {
                "total": round(revenue_rows[0].get("total") or 0, 2),
                "orderCount": revenue_rows[0].get("order_count", 0),
            }

        recent_order_docs = list(
            db.orders.find()
            .sort([("created_at", -1), ("_id", -1)])
            .limit(RECENT_ORDERS_LIMIT)
        )
        recent_users, _ = build_order_context(
            [{"user": document.get("user")} for document in recent_order_docs]
        )
        recent_orders = []
        for document in recent_order_docs:
            owner = recent_users.get(document.get("user"))
            recent_orders.append(
                {
                    "id": str(document["_id"]),
                    "user": {"id": str(owner["_id"]), "name": owner.get("name", "")}
                    if owner
                    else None,
                    "totalAmount": document.get("total_amount", 0),
                    "orderStatus": document.get("order_status", "") or "",
                    "createdAt": format_timestamp(document.get("created_at")),
                }
            )

        # Ties on quantity fall back to product id so the ranking is stable.
        popularity_rows = list(
            db.orders.aggregate(
                [
                    {"$unwind": "$products"},
                    {
                        "$group": {
                            "_id": "$products.product",
                            "count": {"$sum": "$products.quantity"},
                        }
                    },
                    {"$sort": {"count": -1, "_id": 1}},
                    {"$limit": POPULAR_PRODUCTS_LIMIT},
                ]
            )
        )
        _, popular_products = build_order_context(
            [{"products": [{"product": row["_id"]} for row in popularity_rows]}]
        )

        return jsonify(
            {
                "counts": counts,
                "revenue": revenue,
                "recentOrders": recent_orders,
                "popularProducts": [
                    {
                        "product": summarize_product(popular_products.get(row["_id"])),
                        "count": row.get("count", 0),
                    }
                    for row in popularity_rows
                ],
            }
        )

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Front end
    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def serve_frontend(path: str):
        if path == "api" or path.startswith("api/"):
            return jsonify({"message": "Not found"}), 404

        static_folder = app.config["STATIC_FOLDER"]
        if path and os.path.isfile(os.path.join(static_folder, path)):
            return send_from_directory(static_folder, path)
        return send_from_directory(static_folder, "index.html")

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
