import unittest

from shardflip.core.events import (
    EventBus,
    EventKind,
    GamePlayed,
    OwnershipTransferred,
    Paused,
    event_from_dict,
    event_to_dict,
)
from shardflip.core.models import CoinSide


class TestEventEncoding(unittest.TestCase):
    def test_game_played_dict_is_tagged(self):
        event = GamePlayed(
            player="0xalice",
            bet_amount=100,
            chosen_side=CoinSide.HEADS,
            result_side=CoinSide.TAILS,
            won=False,
            payout=0,
            timestamp=1700000000,
            index=4,
        )
        data = event_to_dict(event)

        self.assertEqual(data["type"], "game_played")
        self.assertEqual(data["chosen_side"], "heads")
        self.assertEqual(data["event_key"], "0xalice:1700000000:4")
        self.assertNotIn("kind", data)
        self.assertEqual(event_from_dict(data), event)

    def test_admin_event_from_dict(self):
        event = event_from_dict(
            {"type": "ownership_transferred", "previous_owner": "0xa", "new_owner": "0xb"}
        )
        self.assertEqual(event, OwnershipTransferred(previous_owner="0xa", new_owner="0xb"))
        self.assertEqual(event.kind, EventKind.OWNERSHIP_TRANSFERRED)

    def test_bad_payloads_raise_value_error(self):
        for payload in ({}, {"type": "bogus"}, {"type": "paused", "owner": "0xa"}):
            with self.assertRaises(ValueError):
                event_from_dict(payload)


class TestEventBus(unittest.TestCase):
    def test_failing_subscriber_does_not_block_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(Paused(account="0xowner"))

        self.assertEqual(received, [Paused(account="0xowner")])
        self.assertEqual(bus.delivered[EventKind.PAUSED], 1)

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(received.append)
        unsubscribe()
        bus.publish(Paused(account="0xowner"))
        self.assertEqual(received, [])


if __name__ == "__main__":
    unittest.main()
