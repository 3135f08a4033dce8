"""
Unit tests for provider payload normalization
"""
from datetime import datetime

import pytest

from conftest import item_payload, order_payload
from listing_sync.core.parsers import (
    extract_media_verdict,
    map_order_status,
    parse_item_snapshot,
    parse_order_snapshot,
    parse_visits_payload,
    unwrap_item_entry,
)


class TestVisitsPayload:
    """Test the visits time-window shapes"""

    def test_visits_shape_with_all_count_fields(self):
        payload = {
            "item_id": "MLB1",
            "visits": [
                {"date": "2024-01-01T00:00:00Z", "visits": 5},
                {"date": "2024-01-02T00:00:00Z", "total": 3},
                {"date": "2024-01-03T00:00:00Z", "visits_detail": [{"quantity": 2}, {"quantity": 4}]},
            ],
        }

        shape, points = parse_visits_payload(payload)

        assert shape == "visits"
        assert [(p.date, p.visits) for p in points] == [
            ("2024-01-01", 5),
            ("2024-01-02", 3),
            ("2024-01-03", 6),
        ]

    def test_entry_without_count_is_skipped(self):
        """Test a day without any count is unknown, not zero"""
        shape, points = parse_visits_payload({"results": [
            {"date": "2024-01-01", "visits": 0},
            {"date": "2024-01-02"},
            {"visits": 7},
        ]})

        assert shape == "results"
        assert [(p.date, p.visits) for p in points] == [("2024-01-01", 0)]

    def test_bare_array_with_day_key(self):
        shape, points = parse_visits_payload([{"day": "2024-02-10", "total": 4}])

        assert shape == "array"
        assert points[0].date == "2024-02-10"
        assert points[0].visits == 4

    def test_same_day_is_summed(self):
        _, points = parse_visits_payload({"visits": [
            {"date": "2024-01-01T03:00:00Z", "visits": 1},
            {"date": "2024-01-01T20:00:00Z", "visits": 2},
        ]})

        assert len(points) == 1
        assert points[0].visits == 3

    def test_unknown_shape(self):
        assert parse_visits_payload({"total_visits": 10}) == (None, [])


class TestItemEntries:
    """Test bulk detail entry unwrapping"""

    def test_multiget_entry(self):
        body = {"id": "MLB1", "title": "x"}
        assert unwrap_item_entry({"code": 200, "body": body}) == (200, body)

    def test_multiget_error_entry(self):
        status, body = unwrap_item_entry({"code": 403, "body": {"code": "PA_UNAUTHORIZED_RESULT_FROM_POLICIES"}})

        assert status == 403
        assert body["code"].startswith("PA_")

    def test_plain_entry(self):
        assert unwrap_item_entry({"id": "MLB1"}) == (200, {"id": "MLB1"})

    def test_unrecognized_entry(self):
        assert unwrap_item_entry("garbage") == (None, "garbage")


class TestMediaVerdict:
    """Test tri-state video/clip detection"""

    @pytest.mark.parametrize("item,status,expected", [
        ({"id": "X", "video_id": "abc123"}, 200, True),
        ({"id": "X", "video_id": None}, 200, False),
        ({"id": "X", "video_id": None}, None, None),
        ({"id": "X", "videos": []}, 200, False),
        ({"id": "X", "videos": [{"id": "v"}]}, 200, True),
        ({"id": "X", "has_clips": True}, 200, True),
        ({"id": "X", "attributes": [{"id": "VIDEO_URL", "name": "Video"}]}, 200, True),
        ({"id": "X", "tags": ["good_quality_picture", "with_clip"]}, 200, True),
        ({"id": "X", "title": "sem midia"}, 200, None),
    ])
    def test_signals(self, item, status, expected):
        assert extract_media_verdict(item, status) is expected

    def test_positive_signal_beats_confirmed_absence(self):
        item = {"id": "X", "video_id": None, "tags": ["clip"]}
        assert extract_media_verdict(item, 200) is True

    @pytest.mark.parametrize("item", [None, {}, {"html": "<html></html>"}, ["video"]])
    def test_unusable_payloads(self, item):
        assert extract_media_verdict(item) is None


class TestItemSnapshot:
    """Test item detail normalization"""

    def test_full_item(self):
        snapshot = parse_item_snapshot(item_payload("MLB100"))

        assert snapshot.external_id == "MLB100"
        assert snapshot.price == 99.90
        assert snapshot.stock == 25
        assert snapshot.status == "active"
        assert snapshot.health_score == 80.0
        assert snapshot.pictures == ["https://img/1.jpg", "https://img/2.jpg"]
        assert snapshot.pictures_count == 2
        assert snapshot.variations_count == 0
        assert snapshot.has_video is None
        assert snapshot.has_clips is None

    def test_absent_optional_fields_stay_none(self):
        snapshot = parse_item_snapshot({"id": "MLB2", "title": "t", "price": 10, "status": "closed"})

        assert snapshot.status == "deleted"
        assert snapshot.pictures is None
        assert snapshot.pictures_count is None
        assert snapshot.variations_count is None
        assert snapshot.description is None

    def test_description_object(self):
        snapshot = parse_item_snapshot(item_payload(description={"plain_text": "Descricao completa"}))
        assert snapshot.description == "Descricao completa"

    def test_secure_thumbnail_preferred(self):
        snapshot = parse_item_snapshot(item_payload(secure_thumbnail="https://img/t.jpg"))
        assert snapshot.thumbnail == "https://img/t.jpg"


class TestOrderSnapshot:
    """Test order normalization"""

    def test_paid_order(self):
        snapshot = parse_order_snapshot(order_payload(quantity=2, unit_price=50.0))

        assert snapshot.external_order_id == "2000001"
        assert snapshot.status == "paid"
        assert snapshot.total_amount == 100.0
        assert snapshot.buyer_id == "555"
        assert snapshot.order_date == datetime(2024, 1, 15, 13, 30)
        assert snapshot.paid_date == datetime(2024, 1, 15, 14, 0)
        assert len(snapshot.lines) == 1
        assert snapshot.lines[0].listing_external_id == "MLB100"
        assert snapshot.lines[0].total_price == 100.0

    def test_order_without_approved_payment(self):
        snapshot = parse_order_snapshot(order_payload(status="payment_required", date_approved=None))

        assert snapshot.status == "pending"
        assert snapshot.paid_date is None

    def test_total_falls_back_to_lines(self):
        payload = order_payload(quantity=3, unit_price=10.0)
        payload.pop("total_amount")

        assert parse_order_snapshot(payload).total_amount == 30.0

    def test_missing_date_created(self):
        payload = order_payload()
        payload["date_created"] = None

        with pytest.raises(ValueError):
            parse_order_snapshot(payload)

    @pytest.mark.parametrize("provider_status,expected", [
        ("paid", "paid"),
        ("ready_to_ship", "shipped"),
        ("cancelled", "cancelled"),
        ("something_new", "pending"),
        (None, "pending"),
    ])
    def test_status_map(self, provider_status, expected):
        assert map_order_status(provider_status) == expected
