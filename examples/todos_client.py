"""Python client for a streaming todos API.

Creates a todo, subscribes to its updates, renames it, and prints the
update event pushed by the server.

    pip install channels-api

    python examples/todos_client.py --url ws://localhost:8000/api/
"""

import argparse
import asyncio
import signal

from channels_api import ChannelsApiOptions, RequestError, connect


async def main(url: str, stream: str, text: str):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    options = ChannelsApiOptions(request_timeout=10.0)
    async with connect(url, options=options) as api:
        print(f"Connected to {url}")

        todo = await api.create(stream, {"text": text})
        print(f"Created: {todo}")

        def on_update(event):
            print(f"[{event['action']}] {event.get('data')}")

        ack, subscription = api.subscribe(stream, "update", on_update, pk=todo["id"])
        await ack

        try:
            await api.update(stream, todo["id"], {"text": text.upper()})
        except RequestError as exc:
            print(f"Update failed: {exc.errors}")

        print("Listening for events... (Ctrl+C to stop)\n")
        await stop.wait()
        subscription.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Streaming todos client")
    parser.add_argument("--url", default="ws://localhost:8000/api/")
    parser.add_argument("--stream", default="todos")
    parser.add_argument("--text", default="buy milk")
    args = parser.parse_args()

    asyncio.run(main(args.url, args.stream, args.text))
