"""
Locust Load Test Suite

Needs a seeded listing (LOAD_LISTING_ID, default 1) and renter ids in
LOAD_RENTER_MIN..LOAD_RENTER_MAX that are not its owner.

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test double booking
  locust -f locustfile.py --tags throughput   # Test calendar cache
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests
"""

import os
import random
from datetime import date, timedelta

from locust import HttpUser, task, between, tag, events

LISTING_ID = int(os.environ.get("LOAD_LISTING_ID", "1"))
RENTER_MIN = int(os.environ.get("LOAD_RENTER_MIN", "2"))
RENTER_MAX = int(os.environ.get("LOAD_RENTER_MAX", "500"))

# Every concurrency user fights for a window inside these two weeks
CONTESTED_START = date.today() + timedelta(days=60)
CONTESTED_DAYS = 14


def random_renter_headers():
    return {"X-User-Id": str(random.randint(RENTER_MIN, RENTER_MAX))}


def contested_range():
    offset = random.randint(0, CONTESTED_DAYS - 3)
    start = CONTESTED_START + timedelta(days=offset)
    return start, start + timedelta(days=random.randint(1, 3))


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Listing {LISTING_ID}: contested window starts {CONTESTED_START.isoformat()}")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - overlapping date ranges on one listing

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify no day is held twice:
      SELECT day, COUNT(*) FROM availability_entries
      WHERE listing_id = X GROUP BY day HAVING COUNT(*) > 1;
    Should return no rows.
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        self.headers = random_renter_headers()

    @tag("concurrency")
    @task
    def request_overlapping_dates(self):
        start, end = contested_range()
        with self.client.post(
            "/api/v1/bookings/",
            json={
                "listing_id": LISTING_ID,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            },
            headers=self.headers,
            catch_response=True,
            name="/api/v1/bookings/ [contested]",
        ) as resp:
            if resp.status_code in (201, 409):
                resp.success()  # 409: dates already taken
            else:
                resp.failure(f"Unexpected: {resp.status_code}")


class ThroughputUser(HttpUser):
    """
    TEST 2: Throughput - calendar cache effectiveness

    Run twice, with and without Redis, and compare latency percentiles:
      locust -f locustfile.py --tags throughput -u 100 -r 20 --run-time 60s
    """
    wait_time = between(0.1, 0.5)

    @tag("throughput", "read")
    @task(10)
    def read_calendar(self):
        start = date.today() + timedelta(days=random.randint(0, 30))
        self.client.get(
            f"/api/v1/listings/{LISTING_ID}/availability",
            params={"start_date": start.isoformat(), "end_date": (start + timedelta(days=30)).isoformat()},
            name="/api/v1/listings/{id}/availability [cached]",
        )

    @tag("throughput", "read")
    @task(3)
    def quote(self):
        start = date.today() + timedelta(days=random.randint(10, 90))
        self.client.post(
            "/api/v1/listings/quote",
            json={
                "listing_id": LISTING_ID,
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=random.randint(1, 10))).isoformat(),
                "include_insurance": random.random() < 0.5,
            },
            name="/api/v1/listings/quote",
        )

    @tag("throughput")
    @task(1)
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - bad input must come back as 4xx, never 5xx

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = random_renter_headers()

    def _expect(self, resp, allowed):
        if resp.status_code in allowed:
            resp.success()
        else:
            resp.failure(f"Expected {allowed}, got {resp.status_code}")

    @tag("edge")
    @task
    def unknown_listing(self):
        start = date.today() + timedelta(days=200)
        with self.client.post(
            "/api/v1/bookings/",
            json={"listing_id": 999999, "start_date": start.isoformat(), "end_date": start.isoformat()},
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 404])

    @tag("edge")
    @task
    def reversed_dates(self):
        start = date.today() + timedelta(days=200)
        with self.client.post(
            "/api/v1/bookings/",
            json={
                "listing_id": LISTING_ID,
                "start_date": start.isoformat(),
                "end_date": (start - timedelta(days=3)).isoformat(),
            },
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def past_dates(self):
        start = date.today() - timedelta(days=10)
        with self.client.post(
            "/api/v1/bookings/",
            json={
                "listing_id": LISTING_ID,
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=2)).isoformat(),
            },
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400])

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(
            "/api/v1/bookings/",
            data="not json at all",
            headers=self.headers,
            catch_response=True,
        ) as resp:
            self._expect(resp, [400, 422])

    @tag("edge")
    @task
    def missing_caller(self):
        start = date.today() + timedelta(days=200)
        with self.client.post(
            "/api/v1/bookings/",
            json={"listing_id": LISTING_ID, "start_date": start.isoformat(), "end_date": start.isoformat()},
            catch_response=True,
        ) as resp:
            self._expect(resp, [401])


class RealisticUser(HttpUser):
    """
    TEST 4: Realistic mixed workload

    Run: locust -f locustfile.py -u 200 -r 20 --run-time 120s

    Mostly calendar browsing, some quotes, occasional requests far in the
    future so they rarely collide.
    """
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = random_renter_headers()
        self.booking_ids = []

    @task(50)
    def browse_calendar(self):
        self.client.get(
            f"/api/v1/listings/{LISTING_ID}/availability",
            params={"start_date": date.today().isoformat(), "end_date": (date.today() + timedelta(days=60)).isoformat()},
            name="/api/v1/listings/{id}/availability",
        )

    @task(15)
    def my_bookings(self):
        self.client.get("/api/v1/bookings/?role=renter", headers=self.headers)

    @task(5)
    def request_booking(self):
        start = date.today() + timedelta(days=random.randint(100, 300))
        resp = self.client.post(
            "/api/v1/bookings/",
            json={
                "listing_id": LISTING_ID,
                "start_date": start.isoformat(),
                "end_date": (start + timedelta(days=random.randint(0, 6))).isoformat(),
            },
            headers=self.headers,
        )
        if resp.status_code == 201:
            self.booking_ids.append(resp.json()["id"])

    @task(2)
    def cancel_booking(self):
        if self.booking_ids:
            booking_id = self.booking_ids.pop()
            self.client.post(
                f"/api/v1/bookings/{booking_id}/cancel",
                json={"refund": "full"},
                headers=self.headers,
                name="/api/v1/bookings/{id}/cancel",
            )
