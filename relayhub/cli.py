"""Terminal client: prints relay events and sends stdin lines as messages."""

import argparse
import asyncio
import sys

from .cache import SQLiteMessageCache
from .client import ClientState, ReconnectionController
from .config import CACHE_PATH, CLIENT_URL
from .errors import NotConnectedError
from .logging_config import configure_logging, get_logger

logger = get_logger(__name__)


def _print(line: str) -> None:
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


async def run(url: str, cache_path: str) -> int:
    cache = SQLiteMessageCache(cache_path) if cache_path else None
    state = ClientState(cache=cache)
    exhausted = asyncio.Event()
    controller = ReconnectionController(url, state=state, on_exhausted=exhausted.set)

    if cache is not None:
        loaded = await state.load_cached()
        for msg in reversed(state.messages):
            _print(f"[cached {msg.timestamp}] {msg.client_id[:8]}: {msg.content}")
        logger.debug("loaded cached messages", count=loaded)

    def on_connected(env):
        _print(f"* joined as {env.get('clientId')} ({env.get('userCount')} online)")
        for m in env.get("recentMessages") or []:
            _print(f"[{m.get('timestamp')}] {str(m.get('clientId'))[:8]}: {m.get('content')}")

    controller.on("connected", on_connected)
    controller.on("userCount", lambda env: _print(f"* {env.get('count')} online"))
    controller.on("message", lambda env: _print(f"[{env.get('timestamp')}] {str(env.get('clientId'))[:8]}: {env.get('content')}"))
    controller.on_connection_change(lambda up: _print("* connected" if up else "* connection lost"))
    controller.connect()

    loop = asyncio.get_running_loop()
    exhausted_wait = asyncio.ensure_future(exhausted.wait())
    try:
        while True:
            read = loop.run_in_executor(None, sys.stdin.readline)
            done, _ = await asyncio.wait({read, exhausted_wait}, return_when=asyncio.FIRST_COMPLETED)
            if exhausted_wait in done:
                _print("* giving up after repeated failures; press Enter to exit and restart to retry")
                return 1
            line = read.result()
            if not line or line.strip() == "/quit":
                return 0
            line = line.rstrip("\n")
            if line.strip() == "/clear":
                controller.clear_messages()
                _print("* local history cleared")
                continue
            if not line.strip():
                continue
            try:
                await controller.send(line)
            except NotConnectedError:
                _print("* not connected, message not sent")
    finally:
        exhausted_wait.cancel()
        await controller.aclose()
        if cache is not None:
            cache.close()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="relayhub-client", description="Chat through a relay hub.")
    parser.add_argument("url", nargs="?", default=CLIENT_URL)
    parser.add_argument("--cache", default=CACHE_PATH, help="SQLite cache path ('' disables the cache)")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level)
    try:
        sys.exit(asyncio.run(run(args.url, args.cache)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
