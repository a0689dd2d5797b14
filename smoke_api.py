#!/usr/bin/env python3
"""
SessionLite Smoke Check
Exercises every operations endpoint of a running service.
"""

import sys

from sessionlite.client import SessionLiteClient


def print_section(title: str):
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}\n")


def print_check(name: str, passed: bool, details: str = ""):
    status = "PASS" if passed else "FAIL"
    print(f"  {status}: {name}")
    if details:
        print(f"         {details}")


def check_health(client: SessionLiteClient) -> bool:
    try:
        response = client.health()
        passed = response.get("status") == "healthy"
        print_check("Health", passed, f"Backend: {response.get('store_backend')}")
        return passed
    except Exception as e:
        print_check("Health", False, str(e))
        return False


def check_lifecycle(client: SessionLiteClient) -> bool:
    """Create, read, touch and delete one record."""
    try:
        record = client.create_session(max_inactive_interval=90, attributes={"smoke": True})
        record_id = record["id"]
        print_check("Create", record.get("expires_at_ms") is not None, f"id={record_id}")

        fetched = client.get_session(record_id)
        read_ok = fetched is not None and fetched["attributes"] == {"smoke": True}
        print_check("Read", read_ok)

        touched = client.touch_session(record_id)
        touch_ok = touched is not None and touched["expires_at_ms"] >= record["expires_at_ms"]
        print_check("Touch", touch_ok, f"expires_at_ms={touched and touched['expires_at_ms']}")

        deleted = client.delete_session(record_id).get("deleted", False)
        gone = client.get_session(record_id) is None
        print_check("Delete", deleted and gone)
        return read_ok and touch_ok and deleted and gone
    except Exception as e:
        print_check("Lifecycle", False, str(e))
        return False


def check_permanent(client: SessionLiteClient) -> bool:
    try:
        record = client.create_session(max_inactive_interval=-1)
        passed = record.get("expires_at_ms") is None
        client.delete_session(record["id"])
        print_check("Permanent record has no expiry", passed)
        return passed
    except Exception as e:
        print_check("Permanent record", False, str(e))
        return False


def check_sweep(client: SessionLiteClient) -> bool:
    try:
        result = client.sweep()
        passed = "bucket_ms" in result and result["bucket_ms"] % 60000 == 0
        print_check("Manual sweep", passed, f"bucket={result.get('bucket_ms')} members={result.get('members')}")
        return passed
    except Exception as e:
        print_check("Manual sweep", False, str(e))
        return False


def check_metrics(client: SessionLiteClient) -> bool:
    try:
        text = client.metrics()
        passed = "sessionlite_sweeps_total" in text
        print_check("Prometheus metrics", passed)
        stats_ok = "scheduler" in client.stats()
        print_check("Stats", stats_ok)
        return passed and stats_ok
    except Exception as e:
        print_check("Metrics", False, str(e))
        return False


def run_checks(base_url: str = "http://localhost:8000") -> bool:
    print_section("SessionLite Smoke Check")
    print(f"Target: {base_url}\n")

    results = []
    with SessionLiteClient(base_url) as client:
        print_section("Service")
        results.append(check_health(client))

        print_section("Records")
        results.append(check_lifecycle(client))
        results.append(check_permanent(client))

        print_section("Reconciliation")
        results.append(check_sweep(client))
        results.append(check_metrics(client))

    passed = sum(results)
    total = len(results)

    print_section("Summary")
    print(f"  Passed: {passed}/{total}\n")
    return passed == total


if __name__ == "__main__":
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    sys.exit(0 if run_checks(base_url) else 1)
