# tools/editor_stub.py
"""
Stand-in for the Godot editor plug-in, for manual smoke tests of the bridge.

- connects to ws://127.0.0.1:6505/godot
- announces the project with godot_ready
- answers every tool_invoke with an echo of its arguments
- logs on stderr only
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from godot_bridge.core.protocol import SECOND_CONNECTION_CLOSE_CODE
from godot_bridge.tools.editor_client import EditorClient

logger = logging.getLogger("editor_stub")


async def main(url: str, project: str, delay_s: float) -> int:
    client = EditorClient(url, project_path=project)

    async def _echo(args):
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        return {"echo": args}

    client.fallback = _echo
    try:
        await client.connect()
    except OSError as exc:
        logger.error("cannot reach bridge at %s: %s", url, exc)
        return 1

    logger.info("connected to %s as %s", url, project)
    code = await client.wait_closed(timeout_s=None)
    if code == SECOND_CONNECTION_CLOSE_CODE:
        logger.warning("another editor is already connected; try again later")
        return 2
    logger.info("bridge closed the connection (code=%s)", code)
    return 0


if __name__ == "__main__":
    ap = argparse.ArgumentParser()
    ap.add_argument("--url", default="ws://127.0.0.1:6505/godot")
    ap.add_argument("--project", default="/tmp/godot-project")
    ap.add_argument("--delay", type=float, default=0.0, help="Seconds to wait before answering")
    args = ap.parse_args()
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="[editor-stub] %(message)s")
    try:
        raise SystemExit(asyncio.run(main(args.url, args.project, args.delay)))
    except KeyboardInterrupt:
        raise SystemExit(0)
