def booking_payload(**overrides):
    payload = {
        "name": "Wanjiru",
        "email": "wanjiru@example.com",
        "phone": "+254700000000",
        "date": "2026-11-20",
        "groupSize": "6-10",
        "message": "School trip",
    }
    payload.update(overrides)
    return payload


def test_create_tour_booking_is_public(client):
    response = client.post("/api/tour-bookings", json=booking_payload())

    assert response.status_code == 201
    booking = response.get_json()
    assert booking["status"] == "pending"
    assert booking["date"] == "2026-11-20T00:00:00Z"


def test_create_tour_booking_validates_fields(client):
    missing_phone = client.post("/api/tour-bookings", json=booking_payload(phone=""))
    bad_date = client.post("/api/tour-bookings", json=booking_payload(date="soon"))

    assert missing_phone.status_code == 400
    assert missing_phone.get_json() == {"message": "Phone number is required"}
    assert bad_date.status_code == 400


def test_tour_bookings_list_is_admin_only_and_sorted(client, admin, customer):
    client.post("/api/tour-bookings", json=booking_payload(date="2026-12-01"))
    client.post(
        "/api/tour-bookings",
        json=booking_payload(date="2026-11-02T09:30:00+03:00", groupSize=4),
    )

    assert client.get("/api/tour-bookings").status_code == 401
    assert client.get("/api/tour-bookings", headers=customer["headers"]).status_code == 403
    bookings = client.get("/api/tour-bookings", headers=admin["headers"]).get_json()
    assert [booking["date"] for booking in bookings] == [
        "2026-11-02T06:30:00Z",
        "2026-12-01T00:00:00Z",
    ]
    assert bookings[0]["groupSize"] == "4"


def test_update_tour_booking_status(client, admin):
    booking = client.post("/api/tour-bookings", json=booking_payload()).get_json()
    url = f"/api/tour-bookings/{booking['id']}"

    confirmed = client.put(url, json={"status": "confirmed"}, headers=admin["headers"])
    reopened = client.put(url, json={"status": "pending"}, headers=admin["headers"])
    missing = client.put(
        "/api/tour-bookings/64b7f0c2a1b2c3d4e5f60718",
        json={"status": "confirmed"},
        headers=admin["headers"],
    )

    assert confirmed.get_json()["status"] == "confirmed"
    assert reopened.status_code == 400
    assert missing.status_code == 404
    assert missing.get_json() == {"message": "Booking not found"}


def test_contact_message_flow(client, admin):
    created = client.post(
        "/api/contact",
        json={
            "name": "Otieno",
            "email": "otieno@example.com",
            "subject": "Raw milk",
            "message": "Do you deliver to Naivasha?",
        },
    )

    assert created.status_code == 201
    assert created.get_json() == {"message": "Message sent successfully"}

    messages = client.get("/api/contact", headers=admin["headers"]).get_json()
    assert len(messages) == 1
    assert messages[0]["read"] is False

    updated = client.put(
        f"/api/contact/{messages[0]['id']}", json={"read": True}, headers=admin["headers"]
    )
    assert updated.get_json()["read"] is True
    assert updated.get_json()["subject"] == "Raw milk"


def test_contact_message_requires_subject(client):
    response = client.post(
        "/api/contact",
        json={"name": "Otieno", "email": "otieno@example.com", "message": "Hi"},
    )

    assert response.status_code == 400
    assert response.get_json() == {"message": "Subject is required"}


def test_contact_messages_are_admin_only(client, customer):
    response = client.get("/api/contact", headers=customer["headers"])

    assert response.status_code == 403


def test_subscribe_twice_is_rejected(client):
    first = client.post("/api/newsletter", json={"email": "a@x.com"})
    second = client.post("/api/newsletter", json={"email": "A@x.com"})

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.get_json() == {"message": "Email already subscribed"}


def test_resubscribe_reactivates_existing_record(client, admin, database):
    client.post("/api/newsletter", json={"email": "a@x.com"})
    client.post("/api/newsletter", json={"email": "b@x.com"})
    before = database.newsletter_subscribers.count_documents({})

    unsubscribed = client.post("/api/newsletter/unsubscribe", json={"email": "a@x.com"})
    active = client.get("/api/newsletter/subscribers", headers=admin["headers"]).get_json()
    resubscribed = client.post("/api/newsletter", json={"email": "a@x.com"})

    assert unsubscribed.status_code == 200
    assert [subscriber["email"] for subscriber in active] == ["b@x.com"]
    assert resubscribed.status_code == 200
    assert resubscribed.get_json() == {"message": "Subscription reactivated successfully"}
    assert database.newsletter_subscribers.count_documents({}) == before
    assert database.newsletter_subscribers.count_documents({"email": "a@x.com"}) == 1


def test_unsubscribe_unknown_email_is_not_found(client):
    response = client.post("/api/newsletter/unsubscribe", json={"email": "nobody@x.com"})

    assert response.status_code == 404
    assert response.get_json() == {"message": "Subscription not found"}


def test_subscribe_rejects_invalid_email(client):
    response = client.post("/api/newsletter", json={"email": "nope"})

    assert response.status_code == 400


def test_subscriber_list_is_admin_only(client, customer):
    assert client.get("/api/newsletter/subscribers").status_code == 401
    response = client.get("/api/newsletter/subscribers", headers=customer["headers"])
    assert response.status_code == 403


def test_update_contact_message_missing_and_malformed_ids(client, admin):
    missing = client.put(
        "/api/contact/64b7f0c2a1b2c3d4e5f60718", json={"read": True}, headers=admin["headers"]
    )
    malformed = client.put(
        "/api/contact/not-an-id", json={"read": True}, headers=admin["headers"]
    )

    assert missing.status_code == 404
    assert missing.get_json() == {"message": "Message not found"}
    assert malformed.status_code == 400
    assert malformed.get_json() == {"message": "Invalid message identifier."}
