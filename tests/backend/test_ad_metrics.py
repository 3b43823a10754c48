from __future__ import annotations

from backend.app.services.ad_metrics import derived_fields


def _save(client, **overrides) -> dict:
    payload = {
        "day": "2024-06-01",
        "product_name": "Kit Detox",
        "invested": 100,
        "leads": 40,
        "pix_count": 6,
        "pix_total": 450,
    }
    payload.update(overrides)
    response = client.post("/ad-metrics", json=payload)
    assert response.status_code == 200
    return response.json()


def test_derived_fields() -> None:
    assert derived_fields(invested=100, leads=40, pix_count=6, pix_total=450) == {
        "cpl": 2.5,
        "conversion": 15.0,
        "result": 350,
        "roas": 4.5,
    }
    assert derived_fields(invested=0, leads=0, pix_count=0, pix_total=0) == {
        "cpl": 0.0,
        "conversion": 0.0,
        "result": 0,
        "roas": 0.0,
    }


def test_saving_same_day_and_product_overwrites(client) -> None:
    first = _save(client)
    second = _save(client, product_name="  kit detox ", invested=120, leads=30)

    assert second["id"] == first["id"]
    assert second["product_name"] == "Kit Detox"
    assert second["invested"] == 120
    assert second["cpl"] == 4.0
    assert second["conversion"] == 20.0
    assert len(client.get("/ad-metrics").json()) == 1


def test_summary_recomputes_ratios_from_totals(client) -> None:
    _save(client)
    _save(client, day="2024-06-02", invested=50, leads=10, pix_count=1, pix_total=47)
    _save(client, day="2024-06-10", product_name="Curso", invested=999)

    summary = client.get("/ad-metrics/summary", params={"date_from": "2024-06-01", "date_to": "2024-06-05"})

    assert summary.status_code == 200
    body = summary.json()
    assert body["entries"] == 2
    assert body["invested"] == 150
    assert body["leads"] == 50
    assert body["pix_total"] == 497
    assert body["cpl"] == 3.0
    assert body["conversion"] == 14.0
    assert body["result"] == 347
    assert body["roas"] == 3.3133

    listed = client.get("/ad-metrics", params={"date_from": "2024-06-02"}).json()
    assert [entry["day"] for entry in listed] == ["2024-06-02", "2024-06-10"]


def test_summary_rejects_inverted_range(client) -> None:
    response = client.get("/ad-metrics/summary", params={"date_from": "2024-06-05", "date_to": "2024-06-01"})
    assert response.status_code == 400


def test_delete_entry(client) -> None:
    entry = _save(client)

    assert client.delete(f"/ad-metrics/{entry['id']}").status_code == 204
    assert client.delete(f"/ad-metrics/{entry['id']}").status_code == 404
    assert client.get("/ad-metrics/summary").json()["entries"] == 0


def test_negative_values_are_rejected(client) -> None:
    response = client.post(
        "/ad-metrics", json={"day": "2024-06-01", "product_name": "Kit", "invested": -1}
    )
    assert response.status_code == 422
