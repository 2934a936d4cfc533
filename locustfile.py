import random

from locust import HttpUser, User, between, task
from websocket import create_connection

from shardflip.config import settings
from shardflip.core.security import issue_token


class FlipUser(HttpUser):
    """
    Places small bets and reads the views a dashboard would poll.
    The server must be started with a funded pool (ledger.initial_pool).
    """

    wait_time = between(1, 2)
    host = "http://127.0.0.1:8000"

    def on_start(self):
        self.address = f"0xload{random.getrandbits(64):016x}"
        token = issue_token(settings.security.secret_key, self.address)
        self.headers = {"Authorization": f"Bearer {token}"}

    @task(3)
    def flip(self):
        body = {"stake": settings.ledger.min_bet, "choice": random.choice(["heads", "tails"])}
        with self.client.post("/api/flip", json=body, headers=self.headers, catch_response=True) as response:
            # Rate limiting is expected under load
            if response.status_code == 429:
                response.success()

    @task(2)
    def recent_games(self):
        self.client.get("/api/games/recent?limit=20")

    @task(1)
    def leaderboard(self):
        self.client.get("/mirror/leaderboard?type=wins", name="/mirror/leaderboard")


class WebSocketUser(User):
    wait_time = between(1, 2)
    host = "http://127.0.0.1:8000"

    def on_start(self):
        try:
            self.ws = create_connection("ws://127.0.0.1:8000/ws")
        except Exception as e:
            print(f"Failed to connect to WebSocket: {e}")
            self.environment.runner.quit()

    def on_stop(self):
        if hasattr(self, "ws"):
            self.ws.close()

    @task
    def send_ping(self):
        if not hasattr(self, "ws"):
            return

        try:
            self.ws.send('{"type":"ping"}')
            result = self.ws.recv()
            # Game events may arrive before the pong
            while result != b'{"type":"pong"}':
                result = self.ws.recv()
        except Exception as e:
            print(f"WebSocket error during ping: {e}")
            self.environment.runner.stop()
