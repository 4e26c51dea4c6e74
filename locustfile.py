from locust import HttpUser, task, between
import random

ROAST_LEVELS = ["light", "medium", "dark"]


class CafeBrowser(HttpUser):
    wait_time = between(0.1, 0.5)

    def on_start(self):
        # Register a user for this simulated client so favorites can be exercised
        uname = f"user_{random.randint(1, 1_000_000)}"
        r = self.client.post(
            "/api/register",
            json={"username": uname, "email": f"{uname}@example.com", "name": uname, "password": "Browse1234"},
        )
        self.token = r.json()["accessToken"] if r.status_code == 201 else None
        self.cafe_ids = []

    @task(4)
    def list_cafes(self):
        r = self.client.get("/api/cafes", params={"roastLevels": random.choice(ROAST_LEVELS)}, name="/api/cafes?roastLevels")
        if r.status_code == 200:
            self.cafe_ids = [c["id"] for c in r.json()]

    @task(2)
    def search(self):
        self.client.get("/api/cafes", params={"q": "coffee", "sortBy": "rating_high"}, name="/api/cafes?q")

    @task(1)
    def favorite(self):
        if not self.token or not self.cafe_ids:
            return
        self.client.post(
            "/api/favorites",
            json={"cafeId": random.choice(self.cafe_ids)},
            headers={"Authorization": f"Bearer {self.token}"},
        )
