from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from flowguard.contracts import BranchStatus
from flowguard.utils.json_safe import MAX_SAFE_INTEGER, json_safe


def test_large_integers_become_strings():
    assert json_safe(MAX_SAFE_INTEGER) == MAX_SAFE_INTEGER
    assert json_safe(MAX_SAFE_INTEGER + 1) == str(MAX_SAFE_INTEGER + 1)
    assert json_safe(-(MAX_SAFE_INTEGER + 1)) == str(-(MAX_SAFE_INTEGER + 1))


def test_nested_values_are_converted():
    payload = {
        "amount": Decimal("10.50"),
        "at": datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
        "ref": UUID("12345678-1234-5678-1234-567812345678"),
        "status": BranchStatus.DONE,
        "ids": (1, 2**63),
        "ok": True,
        3: None,
    }

    assert json_safe(payload) == {
        "amount": "10.50",
        "at": "2024-01-01T10:00:00+00:00",
        "ref": "12345678-1234-5678-1234-567812345678",
        "status": "DONE",
        "ids": [1, str(2**63)],
        "ok": True,
        "3": None,
    }
