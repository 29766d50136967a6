import mongomock
import pytest

from app import create_app

ADMIN_EMAIL = "admin@abahfarm.test"
TEST_SECRET = "abah-farm-test-secret-with-enough-length"


@pytest.fixture
def database():
    client = mongomock.MongoClient()
    yield client["abah_farm_test"]
    client.drop_database("abah_farm_test")


@pytest.fixture
def static_folder(tmp_path):
    (tmp_path / "index.html").write_text("<html><body>Abah Farm</body></html>")
    (tmp_path / "scripts.js").write_text("console.log('farm');")
    return tmp_path


@pytest.fixture
def app_config(static_folder):
    return {
        "TESTING": True,
        "JWT_SECRET_KEY": TEST_SECRET,
        "BCRYPT_ROUNDS": 4,
        "SEED_PRODUCTS": False,
        "ADMIN_EMAILS": ADMIN_EMAIL,
        "STATIC_FOLDER": str(static_folder),
    }


@pytest.fixture
def app(app_config, database):
    return create_app(app_config, database=database)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register_user(client):
    def _register(name="Amina", email="amina@example.com", password="milk-and-honey"):
        response = client.post(
            "/api/auth/register",
            json={"name": name, "email": email, "password": password},
        )
        assert response.status_code == 201, response.get_json()
        body = response.get_json()
        return {
            "id": body["user"]["id"],
            "headers": {"Authorization": f"Bearer {body['token']}"},
        }

    return _register


@pytest.fixture
def admin(register_user):
    return register_user(name="Farm Admin", email=ADMIN_EMAIL)


@pytest.fixture
def customer(register_user):
    return register_user()


@pytest.fixture
def make_product(client, admin):
    def _make(sku="MILK-001", name="Fresh Milk", **overrides):
        payload = {
            "name": name,
            "description": "Pure and natural milk directly from our farm.",
            "price": 3.5,
            "image": "/images/fresh-milk.jpg",
            "category": "milk",
            "sku": sku,
        }
        payload.update(overrides)
        response = client.post("/api/products", json=payload, headers=admin["headers"])
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _make


@pytest.fixture
def place_order(client):
    def _place(user, items, total_amount=10.0):
        response = client.post(
            "/api/orders",
            json={
                "products": [
                    {"product": product_id, "quantity": quantity}
                    for product_id, quantity in items
                ],
                "totalAmount": total_amount,
                "shippingAddress": {
                    "street": "1 Meadow Lane",
                    "city": "Nakuru",
                    "state": "Rift Valley",
                    "zipCode": "20100",
                    "country": "Kenya",
                },
                "paymentMethod": "cash_on_delivery",
            },
            headers=user["headers"],
        )
        assert response.status_code == 201, response.get_json()
        return response.get_json()

    return _place
