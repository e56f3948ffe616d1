from models import Notification, OrderStatus, PaymentStatus

SCAN = "https://cdn.example.com/rx/scan.jpg"


async def test_upload_prescription_for_order(client, session, make_order, customer_headers):
    order, _ = make_order(with_payment=False)

    response = await client.post("/prescriptions", json={"image_url": SCAN, "order_id": order.id},
                                 headers=customer_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["order_id"] == order.id
    session.refresh(order)
    assert order.requires_prescription is True


async def test_upload_rejects_non_url(client, customer_headers):
    response = await client.post("/prescriptions", json={"image_url": "file:///etc/passwd"},
                                 headers=customer_headers)

    assert response.status_code == 422


async def test_customer_sees_only_own_prescriptions(client, customer_headers, other_headers, admin_headers):
    await client.post("/prescriptions", json={"image_url": SCAN}, headers=customer_headers)
    await client.post("/prescriptions", json={"image_url": SCAN}, headers=other_headers)

    mine = await client.get("/prescriptions", headers=customer_headers)
    queue = await client.get("/prescriptions", params={"status": "pending"}, headers=admin_headers)

    assert [item["user_id"] for item in mine.json()] == ["user-1"]
    assert sorted(item["user_id"] for item in queue.json()) == ["user-1", "user-2"]


async def test_prescription_detail_is_private(client, customer_headers, other_headers):
    created = await client.post("/prescriptions", json={"image_url": SCAN}, headers=customer_headers)

    response = await client.get(f"/prescriptions/{created.json()['id']}", headers=other_headers)

    assert response.status_code == 403


async def test_approval_releases_paid_order(client, session, make_order, customer_headers, admin_headers, notifier):
    order, payment = make_order(requires_prescription=True)
    payment.status = PaymentStatus.COMPLETED
    session.commit()
    created = await client.post("/prescriptions", json={"image_url": SCAN, "order_id": order.id},
                                headers=customer_headers)

    response = await client.patch(f"/prescriptions/{created.json()['id']}/review", headers=admin_headers,
                                  json={"status": "approved", "admin_notes": "Valid until March"})

    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    assert response.json()["reviewed_by"] == "admin-1"
    session.refresh(order)
    assert order.prescription_approved is True
    assert order.status == OrderStatus.CONFIRMED
    assert notifier.sent == [(order.id, OrderStatus.CONFIRMED)]
    assert session.query(Notification).filter(Notification.user_id == "user-1").count() == 1


async def test_rejection_keeps_order_pending(client, session, make_order, customer_headers, admin_headers, notifier):
    order, _ = make_order(requires_prescription=True)
    created = await client.post("/prescriptions", json={"image_url": SCAN, "order_id": order.id},
                                headers=customer_headers)

    response = await client.patch(f"/prescriptions/{created.json()['id']}/review", headers=admin_headers,
                                  json={"status": "rejected", "admin_notes": "Image unreadable"})

    assert response.status_code == 200
    session.refresh(order)
    assert order.status == OrderStatus.PENDING
    assert notifier.sent == []


async def test_review_requires_admin(client, customer_headers):
    created = await client.post("/prescriptions", json={"image_url": SCAN}, headers=customer_headers)

    response = await client.patch(f"/prescriptions/{created.json()['id']}/review", headers=customer_headers,
                                  json={"status": "approved"})

    assert response.status_code == 403


async def test_reviewed_prescription_cannot_flip(client, customer_headers, admin_headers):
    created = await client.post("/prescriptions", json={"image_url": SCAN}, headers=customer_headers)
    url = f"/prescriptions/{created.json()['id']}/review"
    await client.patch(url, headers=admin_headers, json={"status": "rejected"})

    response = await client.patch(url, headers=admin_headers, json={"status": "approved"})

    assert response.status_code == 409


async def test_upload_for_shipped_order_keeps_it_moving(client, session, make_order, customer_headers,
                                                        admin_headers):
    order, payment = make_order(order_status=OrderStatus.SHIPPED)
    payment.status = PaymentStatus.COMPLETED
    session.commit()

    upload = await client.post("/prescriptions", json={"image_url": SCAN, "order_id": order.id},
                               headers=customer_headers)
    response = await client.patch(f"/orders/{order.id}/status", headers=admin_headers,
                                  json={"status": "out_for_delivery"})

    assert upload.status_code == 201
    assert response.status_code == 200
    session.refresh(order)
    assert order.requires_prescription is False
    assert order.status == OrderStatus.OUT_FOR_DELIVERY
