import logging

import pytest

from errors import UpstreamError
from main import app, get_payment_gateway
from moderation import MAX_FILE_SIZE
from orders import OrderRepository, PaymentGateway

ADDRESS = {"street": "1 Canvas Way", "city": "Austin", "state": "TX", "zip": "78701", "country": "US"}


class ApprovingGateway(PaymentGateway):
    def authorize(self, payment_method, total_minor_units):
        return True


@pytest.fixture
def approving_gateway(client):
    # cleared by the client fixture on teardown
    app.dependency_overrides[get_payment_gateway] = ApprovingGateway


def checkout_payload(**overrides):
    payload = {
        "items": [
            {"product_id": "7", "variant": "16x20", "quantity": 1},
            {"product_id": "7", "variant": "24x36", "quantity": 1},
        ],
        "shipping_address": ADDRESS,
        "payment_method": "pay_abc",
    }
    payload.update(overrides)
    return payload


def test_root(client):
    assert client.get("/").json()["status"] == "ok"


def test_register_and_login(client):
    res = client.post("/auth/register", json={"name": "Ada", "email": "ada@example.com", "password": "s3cret!"})
    assert res.status_code == 200

    dup = client.post("/auth/register", json={"name": "Ada", "email": "ada@example.com", "password": "x"})
    assert dup.status_code == 400

    bad = client.post("/auth/token", data={"username": "ada@example.com", "password": "wrong"})
    assert bad.status_code == 400

    token = client.post("/auth/token", data={"username": "ada@example.com", "password": "s3cret!"}).json()
    me = client.get("/me", headers={"Authorization": f"Bearer {token['access_token']}"}).json()
    assert me["role"] == "user"


def test_register_rejects_malformed_email(client, seeded_db):
    res = client.post("/auth/register", json={"name": "Ada", "email": "not-an-email", "password": "s3cret!"})
    assert res.status_code == 422
    assert seeded_db["user"].count_documents({}) == 0


def test_products_are_listed_and_admin_managed(client, make_user):
    ids = [p["product_id"] for p in client.get("/api/products").json()]
    assert ids == sorted(ids) and "7" in ids

    _, user_headers = make_user("user")
    _, admin_headers = make_user("admin")
    new = {"product_id": "33", "name": "Night Ferry", "price_minor_units": 15000, "variants": [{"label": "8x10"}]}

    assert client.post("/api/products", json=new, headers=user_headers).status_code == 403
    assert client.post("/api/products", json=new, headers=admin_headers).status_code == 201

    patched = client.patch("/api/products/33", json={"name": "Night Ferry II"}, headers=admin_headers).json()
    assert patched["slug"] == "night-ferry-ii"

    assert client.delete("/api/products/33", headers=admin_headers).status_code == 200
    assert client.get("/api/products/33").status_code == 404


def test_persisted_cart_and_view(client, make_user):
    _, headers = make_user("user")

    client.post("/api/cart", json={"product_id": "7", "variant": "16x20", "quantity": 1}, headers=headers)
    client.post("/api/cart", json={"product_id": "7", "variant": "16x20", "quantity": 2}, headers=headers)
    cart = client.get("/api/cart", headers=headers).json()["cart"]
    assert cart == [{"product_id": "7", "quantity": 3, "variant": "16x20"}]

    view = client.get("/api/cart/view", headers=headers).json()
    assert view["total"] == 78000
    assert view["items"][0]["name"] == "Tidal Archive No. 7"

    client.request("DELETE", "/api/cart", json={"product_id": "7", "variant": "16x20"}, headers=headers)
    assert client.get("/api/cart", headers=headers).json()["cart"] == []


def test_cart_rejects_unknown_products(client, make_user):
    _, headers = make_user("user")
    res = client.post("/api/cart", json={"product_id": "999", "variant": "16x20"}, headers=headers)
    assert res.status_code == 404
    res = client.post("/api/cart", json={"product_id": "7", "variant": "99x99"}, headers=headers)
    assert res.status_code == 400


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401


def test_anonymous_checkout(client):
    res = client.post("/api/checkout", json=checkout_payload())
    assert res.status_code == 201
    body = res.json()
    assert body["total_minor_units"] == 55000
    assert body["status"] == "pending"
    assert body["payment_status"] == "pending"


def test_checkout_prices_come_from_catalog(client, seeded_db):
    payload = checkout_payload(items=[{"product_id": "7", "variant": "16x20", "quantity": 2, "price": 1}])
    body = client.post("/api/checkout", json=payload).json()
    assert body["total_minor_units"] == 52000


def test_checkout_validation_errors(client):
    empty = client.post("/api/checkout", json=checkout_payload(items=[]))
    assert empty.status_code == 400
    assert empty.json()["error"] == "validation"

    no_zip = client.post("/api/checkout", json=checkout_payload(shipping_address={**ADDRESS, "zip": ""}))
    assert no_zip.status_code == 400
    assert "zip" in no_zip.json()["detail"]


def test_client_cannot_claim_its_own_payment(client, seeded_db):
    body = client.post("/api/checkout", json=checkout_payload(payment_authorized=True, payment_method="anything")).json()

    assert body["payment_status"] == "pending"
    assert seeded_db["order"].find_one()["payment_status"] == "pending"


def test_authorized_checkout_marks_paid_and_clears_cart(client, approving_gateway, make_user, seeded_db):
    identity, headers = make_user("user")
    client.post("/api/cart", json={"product_id": "12", "variant": "18x24"}, headers=headers)

    body = client.post("/api/checkout", json=checkout_payload(), headers=headers).json()

    assert body["payment_status"] == "paid"
    assert client.get("/api/cart", headers=headers).json()["cart"] == []
    order = client.get(f"/api/orders/{body['order_id']}", headers=headers).json()
    assert order["user_id"] == identity.user_id
    assert order["total_minor_units"] == 55000


def test_failed_order_write_is_flagged_for_reconciliation(client, approving_gateway, seeded_db, monkeypatch, caplog):
    def refuse(self, order):
        raise UpstreamError("Order could not be stored")

    monkeypatch.setattr(OrderRepository, "insert", refuse)

    with caplog.at_level(logging.ERROR, logger="canvas_store"):
        res = client.post("/api/checkout", json=checkout_payload())

    assert res.status_code == 502
    assert "needs reconciliation" in caplog.text
    assert seeded_db["order"].count_documents({}) == 0


def test_failed_paid_write_is_flagged_for_reconciliation(client, approving_gateway, seeded_db, monkeypatch, caplog):
    def refuse(self, order_id, new_status):
        raise UpstreamError("Order could not be updated")

    monkeypatch.setattr(OrderRepository, "update_payment_status", refuse)

    with caplog.at_level(logging.ERROR, logger="canvas_store"):
        res = client.post("/api/checkout", json=checkout_payload())

    assert res.status_code == 502
    assert "not marked paid; needs reconciliation" in caplog.text
    assert seeded_db["order"].find_one()["payment_status"] == "pending"


def test_unpaid_checkout_logs_nothing_to_reconcile(client, seeded_db, monkeypatch, caplog):
    def refuse(self, order):
        raise UpstreamError("Order could not be stored")

    monkeypatch.setattr(OrderRepository, "insert", refuse)

    with caplog.at_level(logging.ERROR, logger="canvas_store"):
        res = client.post("/api/checkout", json=checkout_payload())

    assert res.status_code == 502
    assert "needs reconciliation" not in caplog.text


def test_order_visibility_and_status_updates(client, make_user):
    _, alice = make_user("user")
    _, bob = make_user("user")
    _, admin = make_user("admin")

    order_id = client.post("/api/checkout", json=checkout_payload(), headers=alice).json()["order_id"]

    assert len(client.get("/api/orders", headers=alice).json()["orders"]) == 1
    assert client.get("/api/orders", headers=bob).json()["orders"] == []
    assert client.get(f"/api/orders/{order_id}", headers=bob).status_code == 404

    url = f"/api/orders/{order_id}/status"
    assert client.patch(url, json={"status": "processing"}, headers=alice).status_code == 403
    skipped = client.patch(url, json={"status": "delivered"}, headers=admin)
    assert skipped.status_code == 409
    assert skipped.json()["error"] == "invalid_transition"

    for step in ("processing", "shipped", "delivered"):
        assert client.patch(url, json={"status": step}, headers=admin).status_code == 200
    assert client.patch(url, json={"status": "cancelled"}, headers=admin).status_code == 409

    paid = client.patch(f"/api/orders/{order_id}/payment-status", json={"payment_status": "paid"}, headers=admin)
    assert paid.json()["payment_status"] == "paid"


@pytest.mark.parametrize("limit", [0, -1, 201])
def test_order_listing_limit_is_bounded(client, make_user, limit):
    _, headers = make_user("admin")
    assert client.get(f"/api/orders?limit={limit}", headers=headers).status_code == 422


def test_notes_endpoints(client, make_user):
    _, curator = make_user("curator")
    _, admin = make_user("admin")
    _, user = make_user("user")

    payload = {"content": "Swap hero image", "page": "/", "position_x": 120, "position_y": 5}
    assert client.post("/api/notes", json=payload, headers=user).status_code == 403
    note = client.post("/api/notes", json=payload, headers=curator).json()["note"]
    assert note["position_x"] == 100
    assert note["color"] == "yellow"

    resolved = client.patch("/api/notes", json={"note_id": note["id"], "resolved": True}, headers=curator).json()
    assert resolved["note"]["resolved_by"] is not None

    assert client.delete(f"/api/notes?id={note['id']}", headers=curator).status_code == 403
    assert client.delete(f"/api/notes?id={note['id']}", headers=admin).status_code == 200
    assert client.delete(f"/api/notes?id={note['id']}", headers=admin).status_code == 404
    assert client.get("/api/notes", headers=curator).json()["notes"] == []


def test_unknown_role_is_denied_not_an_error(client, make_user):
    _, headers = make_user("intern")
    res = client.get("/api/notes", headers=headers)
    assert res.status_code == 403
    assert res.json()["error"] == "authorization"


def test_upload_flow(client, make_user, image_store):
    _, curator = make_user("curator")
    _, admin = make_user("admin")

    files = {"file": ("shot.png", b"\x89PNG\r\n\x1a\n" + b"\x00" * 32, "image/png")}
    res = client.post("/api/curator/upload", data={"productId": "7"}, files=files, headers=curator)
    assert res.status_code == 201
    upload = res.json()["upload"]
    assert upload["status"] == "pending"
    assert (image_store.upload_dir / upload["stored_filename"]).exists()

    gif = {"file": ("anim.gif", b"GIF89a", "image/gif")}
    assert client.post("/api/curator/upload", data={"productId": "7"}, files=gif, headers=curator).status_code == 400

    review = {"upload_id": upload["id"], "status": "approved", "review_note": "ok"}
    assert client.patch("/api/curator/upload", json=review, headers=curator).status_code == 403
    assert client.patch("/api/curator/upload", json=review, headers=admin).json()["upload"]["status"] == "approved"

    assert len(client.get("/api/curator/upload", headers=curator).json()["uploads"]) == 1


def test_oversized_upload_is_refused_over_http(client, make_user, image_store, seeded_db):
    _, curator = make_user("curator")

    files = {"file": ("huge.png", b"\x00" * (MAX_FILE_SIZE + 1), "image/png")}
    res = client.post("/api/curator/upload", data={"productId": "7"}, files=files, headers=curator)

    assert res.status_code == 400
    assert res.json()["error"] == "validation"
    assert seeded_db["upload"].count_documents({}) == 0
    assert not image_store.upload_dir.exists()


def test_admin_stats(client, make_user):
    _, admin = make_user("admin")
    _, curator = make_user("curator")
    assert client.get("/admin/stats", headers=curator).status_code == 403
    stats = client.get("/admin/stats", headers=admin).json()
    assert stats["products"] == 3
    assert stats["users"] == 2
