import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import orjson
from fastapi.testclient import TestClient

from shardflip.config import AppConfig, settings
from shardflip.core.events import event_to_dict, GamePlayed
from shardflip.core.ledger import BettingLedger
from shardflip.core.models import CoinSide
from shardflip.core.security import issue_token, read_token
from shardflip.core.wallets import WalletBook
from shardflip.core.websocket import ConnectionManager, GAME_TOPIC
from shardflip.main import create_app
from shardflip.routers.api import limiter

SECRET = "test-secret"
API_KEY = "test-api-key"
OWNER = "0xowner"
ALICE = "0xalice"
BOB = "0xbob"


class ScriptedCoin:
    def __init__(self, *sides):
        self.sides = list(sides)

    def draw(self, player, nonce):
        return self.sides[nonce % len(self.sides)]


def auth(address):
    return {"Authorization": f"Bearer {issue_token(SECRET, address)}"}


class ApiTestCase(unittest.TestCase):
    rate_limit_enabled = False

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        config = AppConfig()
        config.server.debug = False
        config.security.secret_key = SECRET
        config.security.api_key = API_KEY
        config.rate_limit.enabled = self.rate_limit_enabled
        config.logging.level = "WARNING"
        config.ledger.persist = False
        config.paths.mirror_database = str(Path(self.tmp.name) / "mirror.db")

        self.wallets = WalletBook(starting_balance=1000)
        self.ledger = BettingLedger(
            owner=OWNER,
            min_bet=10,
            max_bet=500,
            coin_source=ScriptedCoin(CoinSide.HEADS),
            transfer=self.wallets.send,
        )
        self.app = create_app(config, ledger=self.ledger, wallets=self.wallets)
        self.client = TestClient(self.app)

    def tearDown(self):
        self.app.state.mirror.close()
        self.tmp.cleanup()

    def fund_pool(self, amount=1000):
        response = self.client.post("/admin/deposit", json={"amount": amount}, headers=auth(OWNER))
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def flip(self, address=ALICE, **body):
        body.setdefault("stake", 100)
        body.setdefault("choice", "heads")
        return self.client.post("/api/flip", json=body, headers=auth(address))


class TestTokens(unittest.TestCase):
    def test_round_trip(self):
        token = issue_token(SECRET, "0xAlice")
        self.assertEqual(read_token(SECRET, token, 60), "0xalice")

    def test_forged_token_rejected(self):
        token = issue_token("other-secret", ALICE)
        self.assertIsNone(read_token(SECRET, token, 60))


class TestFlipEndpoint(ApiTestCase):
    def test_requires_authentication(self):
        response = self.client.post("/api/flip", json={"stake": 100, "choice": "heads"})
        self.assertEqual(response.status_code, 401)

    def test_empty_pool_rejects_and_refunds(self):
        response = self.flip()
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "insufficient_pool_liquidity")
        self.assertEqual(self.wallets.balance(ALICE), 1000)

    def test_winning_flip(self):
        self.fund_pool(1000)
        response = self.flip()

        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()
        self.assertTrue(data["won"])
        self.assertEqual(data["payout"], 200)
        self.assertEqual(data["index"], 0)
        self.assertEqual(data["wallet_balance"], 1100)
        self.assertEqual(self.ledger.pool_balance, 900)

    def test_losing_flip(self):
        self.fund_pool(1000)
        response = self.flip(choice="TAILS")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["won"])
        self.assertEqual(response.json()["wallet_balance"], 900)

    def test_validation_errors(self):
        self.fund_pool(1000)
        cases = [
            ({"stake": 5}, "bet_too_low"),
            ({"stake": 501}, "bet_too_high"),
            ({"choice": "edge"}, "invalid_side"),
            ({"value": 99}, "payment_not_attached"),
        ]
        for body, code in cases:
            response = self.flip(**body)
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.json()["error"], code)
        self.assertEqual(self.wallets.balance(ALICE), 1000)
        self.assertEqual(self.ledger.get_total_games(), 0)

    def test_wallet_must_cover_value(self):
        self.fund_pool(1000)
        self.wallets.debit(ALICE, 950)
        response = self.flip(stake=100)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "insufficient_wallet_funds")

    def test_paused_ledger_returns_503(self):
        self.fund_pool(1000)
        self.client.post("/admin/pause", headers=auth(OWNER))
        response = self.flip()
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "paused")

    def test_failed_payout_returns_502_and_refunds(self):
        self.fund_pool(1000)
        self.wallets.freeze(ALICE)
        response = self.flip()
        self.assertEqual(response.status_code, 502)
        self.assertEqual(self.wallets.balance(ALICE), 1000)
        self.assertEqual(self.ledger.pool_balance, 1000)


class TestViews(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.fund_pool(5000)
        self.flip(ALICE, stake=100)
        self.flip(BOB, stake=50, choice="tails")
        self.flip(ALICE, stake=20)

    def test_player_stats(self):
        data = self.client.get(f"/api/players/{ALICE}/stats").json()
        self.assertEqual(data["total_games"], 2)
        self.assertEqual(data["total_wagered"], 120)
        self.assertEqual(data["net_profit"], 120)
        self.assertEqual(data["win_rate"], 100.0)

    def test_player_games_and_played(self):
        data = self.client.get(f"/api/players/{ALICE}/games", params={"limit": 1}).json()
        self.assertEqual([g["bet_amount"] for g in data["games"]], [20])
        self.assertTrue(self.client.get(f"/api/players/{BOB}/played").json()["played"])
        self.assertFalse(self.client.get("/api/players/0xnobody/played").json()["played"])

    def test_recent_and_indexed_games(self):
        recent = self.client.get("/api/games/recent", params={"limit": 2}).json()["games"]
        self.assertEqual([g["index"] for g in recent], [2, 1])
        self.assertEqual(self.client.get("/api/games/count").json()["total_games"], 3)
        self.assertEqual(self.client.get("/api/games/1").json()["player"], BOB)

        response = self.client.get("/api/games/99")
        self.assertEqual(response.status_code, 404)

    def test_stats_and_leaderboard(self):
        stats = self.client.get("/api/stats").json()
        self.assertEqual(stats["total_games"], 3)
        self.assertEqual(stats["total_volume"], 170)
        self.assertEqual(stats["total_payout"], 240)
        self.assertEqual(stats["active_users"], 2)
        self.assertEqual(stats["pool_balance"], 5000 + 170 - 240)

        board = self.client.get("/api/leaderboard").json()["leaderboard"]
        self.assertEqual([e["player"] for e in board], [ALICE, BOB])

    def test_wallet_balance(self):
        data = self.client.get("/api/wallet", headers=auth(BOB)).json()
        self.assertEqual(data["balance"], 950)

    def test_fairness_and_health(self):
        fairness = self.client.get("/api/fairness").json()
        self.assertIsNone(fairness["commitment"])
        self.assertEqual(fairness["next_nonce"], 3)

        response = self.client.get("/api/health")
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(response.headers["X-Frame-Options"], "DENY")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")


class TestAdminEndpoints(ApiTestCase):
    def test_status(self):
        data = self.client.get("/admin/status").json()
        self.assertEqual(data["owner"], OWNER)
        self.assertEqual(data["min_bet"], 10)
        self.assertFalse(data["paused"])

    def test_non_owner_deposit_allowed(self):
        response = self.client.post("/admin/deposit", json={"amount": 300}, headers=auth(BOB))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["pool_balance"], 300)
        self.assertEqual(self.wallets.balance(BOB), 700)

    def test_zero_deposit_refunded(self):
        response = self.client.post("/admin/deposit", json={"amount": 0}, headers=auth(BOB))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.wallets.balance(BOB), 1000)

    def test_owner_only_operations(self):
        self.fund_pool(500)
        for path in ("/admin/pause", "/admin/emergency-withdraw"):
            response = self.client.post(path, headers=auth(ALICE))
            self.assertEqual(response.status_code, 403, path)
            self.assertEqual(response.json()["error"], "not_owner")

        response = self.client.post("/admin/withdraw", json={"amount": 100}, headers=auth(ALICE))
        self.assertEqual(response.status_code, 403)

    def test_withdraw_and_emergency_withdraw(self):
        self.fund_pool(500)
        response = self.client.post("/admin/withdraw", json={"amount": 200}, headers=auth(OWNER))
        self.assertEqual(response.json()["pool_balance"], 300)

        response = self.client.post("/admin/withdraw", json={"amount": 301}, headers=auth(OWNER))
        self.assertEqual(response.status_code, 409)

        response = self.client.post("/admin/emergency-withdraw", headers=auth(OWNER))
        self.assertEqual(response.json()["amount"], 300)
        self.assertEqual(self.wallets.balance(OWNER), 1000)

    def test_pause_cycle(self):
        first = self.client.post("/admin/pause", headers=auth(OWNER)).json()
        second = self.client.post("/admin/pause", headers=auth(OWNER)).json()
        self.assertTrue(first["changed"])
        self.assertFalse(second["changed"])
        self.assertTrue(self.client.post("/admin/unpause", headers=auth(OWNER)).json()["changed"])

    def test_transfer_ownership(self):
        response = self.client.post(
            "/admin/transfer-ownership", json={"new_owner": "0x0000"}, headers=auth(OWNER)
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"], "invalid_owner")

        response = self.client.post(
            "/admin/transfer-ownership", json={"new_owner": BOB}, headers=auth(OWNER)
        )
        self.assertEqual(response.json()["owner"], BOB)
        self.assertEqual(self.client.post("/admin/pause", headers=auth(OWNER)).status_code, 403)

    def test_rotate_seed_unsupported(self):
        response = self.client.post("/admin/rotate-seed", headers=auth(OWNER))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "unsupported_operation")


class TestMirrorEndpoints(ApiTestCase):
    def test_mirror_follows_flips(self):
        self.fund_pool(1000)
        self.flip(ALICE, stake=100)

        user = self.client.get(f"/mirror/users/{ALICE}").json()["user"]
        self.assertEqual(user["total_games"], 1)
        self.assertEqual(user["total_won"], 200)

        board = self.client.get("/mirror/leaderboard", params={"type": "winnings"}).json()
        self.assertEqual(board["leaderboard"][0]["wallet_address"], ALICE)
        self.assertEqual(self.client.get("/mirror/stats").json()["stats"]["total_games"], 1)

    def test_event_ingestion_is_idempotent(self):
        self.fund_pool(1000)
        self.flip(ALICE, stake=100)
        payload = event_to_dict(GamePlayed.from_record(self.ledger.get_game_by_index(0)))

        response = self.client.post("/mirror/events", json=payload)
        self.assertEqual(response.status_code, 401)

        response = self.client.post("/mirror/events", json=payload, headers={"X-API-Key": API_KEY})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["applied"])

        response = self.client.post(
            "/mirror/events", json={"type": "nope"}, headers={"X-API-Key": API_KEY}
        )
        self.assertEqual(response.status_code, 400)

    def assert_rejected(self, **changes):
        payload = event_to_dict(
            GamePlayed(
                player=BOB,
                bet_amount=100,
                chosen_side=CoinSide.HEADS,
                result_side=CoinSide.HEADS,
                won=True,
                payout=200,
                timestamp=1700000000,
                index=7,
            )
        )
        payload.update(changes)
        response = self.client.post(
            "/mirror/events", json=payload, headers={"X-API-Key": API_KEY}
        )
        self.assertEqual(response.status_code, 400, response.text)
        self.assertEqual(response.json()["error"], "invalid_event")
        self.assertIsNone(self.app.state.mirror.get_user(BOB))

    def test_malformed_game_events_rejected(self):
        self.assert_rejected(bet_amount="100")
        self.assert_rejected(payout=-200)
        self.assert_rejected(index=-1)
        self.assert_rejected(won=False)
        self.assert_rejected(result_side="edge")
        self.assert_rejected(payout=150)
        self.assert_rejected(won=False, result_side="tails", payout=200)

    def test_well_formed_external_event_applied(self):
        payload = {
            "type": "game_played",
            "player": BOB,
            "bet_amount": 100,
            "chosen_side": "tails",
            "result_side": "heads",
            "won": False,
            "payout": 0,
            "timestamp": 1700000000,
            "index": 7,
        }
        response = self.client.post("/mirror/events", json=payload, headers={"X-API-Key": API_KEY})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertTrue(response.json()["applied"])
        self.assertEqual(self.client.get(f"/mirror/users/{BOB}").json()["user"]["total_games"], 1)

    def test_list_users(self):
        headers = {"X-API-Key": API_KEY}
        for address in (ALICE, BOB, "0xcarol"):
            self.client.post("/mirror/users", json={"wallet_address": address}, headers=headers)

        body = self.client.get("/mirror/users", params={"limit": 2, "order": "asc"}).json()
        self.assertEqual([u["wallet_address"] for u in body["users"]], [ALICE, BOB])
        self.assertEqual(body["pagination"]["total_pages"], 2)
        self.assertTrue(body["pagination"]["has_more"])

        body = self.client.get(
            "/mirror/users", params={"page": 2, "limit": 2, "order": "asc"}
        ).json()
        self.assertEqual([u["wallet_address"] for u in body["users"]], ["0xcarol"])
        self.assertFalse(body["pagination"]["has_more"])

    def test_list_users_bad_sort(self):
        response = self.client.get("/mirror/users", params={"sort_by": "wallet_address"})
        self.assertEqual(response.status_code, 400)
        response = self.client.get("/mirror/users", params={"order": "sideways"})
        self.assertEqual(response.status_code, 422)

    def test_register_and_lookup(self):
        headers = {"X-API-Key": API_KEY}
        response = self.client.post("/mirror/users", json={"wallet_address": BOB}, headers=headers)
        self.assertEqual(response.json()["message"], "Wallet registered successfully")
        response = self.client.post("/mirror/users", json={"wallet_address": BOB}, headers=headers)
        self.assertEqual(response.json()["message"], "Wallet already registered")

        self.assertEqual(self.client.get("/mirror/users/0xnobody").status_code, 404)

    def test_bad_leaderboard_type(self):
        response = self.client.get("/mirror/leaderboard", params={"type": "losses"})
        self.assertEqual(response.status_code, 400)


class TestWebSocket(ApiTestCase):
    def test_ping_pong(self):
        with self.client.websocket_connect("/ws") as ws:
            ws.send_text('{"type": "ping"}')
            self.assertEqual(orjson.loads(ws.receive_bytes()), {"type": "pong"})

    def test_history_replayed_on_connect(self):
        self.fund_pool(1000)
        self.flip(ALICE, stake=100)

        with self.client.websocket_connect("/ws") as ws:
            message = orjson.loads(ws.receive_bytes())
            self.assertEqual(message["type"], "history")
            self.assertEqual(message["events"][0]["type"], "game_played")
            self.assertEqual(message["events"][0]["player"], ALICE)


class RecordingSocket:
    def __init__(self):
        self.frames = []

    async def send_bytes(self, data):
        self.frames.append(orjson.loads(data))


class TestBroadcastTasks(unittest.TestCase):
    def test_pending_broadcast_held_until_done(self):
        manager = ConnectionManager()
        socket = RecordingSocket()
        manager.all_connections.add(socket)
        manager.topics[GAME_TOPIC].add(socket)
        event = GamePlayed(
            player=ALICE,
            bet_amount=100,
            chosen_side=CoinSide.HEADS,
            result_side=CoinSide.HEADS,
            won=True,
            payout=200,
            timestamp=1700000000,
            index=0,
        )
        pending = []

        async def drain():
            await asyncio.sleep(0)
            pending.append(len(manager._tasks))
            await asyncio.gather(*manager._tasks)

        loop = asyncio.new_event_loop()
        try:
            manager.bind_loop(loop)
            manager.on_event(event)
            loop.run_until_complete(drain())
            loop.run_until_complete(asyncio.sleep(0))
        finally:
            loop.close()

        self.assertEqual(pending, [1])
        self.assertEqual(manager._tasks, set())
        self.assertEqual(socket.frames[0]["event"]["player"], ALICE)


class TestRateLimit(ApiTestCase):
    rate_limit_enabled = True

    def setUp(self):
        super().setUp()
        limiter.reset()
        self.fund_pool(5000)

    def tearDown(self):
        limiter.reset()
        limiter.enabled = False
        super().tearDown()

    def test_flip_rate_limited(self):
        with patch.object(settings.rate_limit, "enabled", True), patch.object(
            settings.rate_limit, "game_requests", "3/minute"
        ):
            for i in range(3):
                self.assertNotEqual(self.flip(stake=10).status_code, 429, f"request {i + 1}")
            self.assertEqual(self.flip(stake=10).status_code, 429)


if __name__ == "__main__":
    unittest.main()
