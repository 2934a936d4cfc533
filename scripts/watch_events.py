import argparse
import asyncio
import json

import websockets


async def watch(uri: str, topic: str):
    """Print every event the server pushes on ``topic`` until interrupted."""
    async with websockets.connect(uri) as websocket:
        print(f"Connected to {uri}")
        if topic != "all":
            other = "admin" if topic == "games" else "games"
            await websocket.send(json.dumps({"type": "unsubscribe", "topic": other}))

        async for frame in websocket:
            message = json.loads(frame)
            if message.get("type") == "history":
                print(f"< history ({len(message['events'])} recent games)")
                continue
            print(f"< {message}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Stream ShardFlip ledger events")
    parser.add_argument("--uri", default="ws://localhost:8000/ws")
    parser.add_argument("--topic", choices=["all", "games", "admin"], default="all")
    args = parser.parse_args()
    try:
        asyncio.run(watch(args.uri, args.topic))
    except KeyboardInterrupt:
        print("Stopped.")
