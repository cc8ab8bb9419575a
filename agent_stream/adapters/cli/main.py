"""CLI JSON-lines adapter — reads a query from argv/stdin, prints ThreadItem snapshots as JSON."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

from agent_stream import create_controller
from agent_stream.engine.errors import AgentStreamError
from agent_stream.engine.models import Caller, ChatMode, ThreadItemStatus


async def run_cli(
    query: str,
    thread_id: str = "cli-default",
    mode: ChatMode = ChatMode.GPT_4O_MINI,
) -> int:
    controller = create_controller()
    try:
        try:
            session = await controller.submit(thread_id, query, Caller(), mode=mode)
        except AgentStreamError as exc:
            print(json.dumps({"error": str(exc)}), file=sys.stderr)
            return 2

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, session.cancel)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform/loop

        async for item in session.updates():
            print(json.dumps(item.to_wire()), flush=True)
        final = await session.wait()
    finally:
        await controller.aclose()
    return 0 if final.status is ThreadItemStatus.COMPLETED else 1


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "WARNING"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    thread_id = "cli-default"
    mode = ChatMode.GPT_4O_MINI
    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        raw = sys.stdin.read().strip()
        if not raw:
            print(
                "Usage: agent-stream <query>  OR  echo '{\"query\":\"...\"}' | agent-stream",
                file=sys.stderr,
            )
            sys.exit(1)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            query = raw
        else:
            query = data.get("query", raw)
            thread_id = data.get("threadId", thread_id)
            mode = ChatMode(data.get("mode", mode.value))

    sys.exit(asyncio.run(run_cli(query, thread_id, mode)))


if __name__ == "__main__":
    main()
