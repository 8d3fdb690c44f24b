#!/usr/bin/env python3
"""
Watch Run Progress via WebSocket
================================

Simple script to watch a session's analysis run in real-time via WebSocket.

Usage:
    # Start a run via FastAPI docs (http://localhost:8000/api/docs)
    # using POST /api/v1/runs, then:
    python watch_run.py <session_id>

Example:
    python watch_run.py session-2024-0117
"""

import asyncio
import json
import sys
import websockets
from datetime import datetime


# Configuration
WS_BASE_URL = "ws://localhost:8000/api/v1"

STATUS_COLORS = {
    "idle": "default",
    "loading": "blue",
    "retrying": "yellow",
    "success": "green",
    "error": "red",
}


def print_colored(message: str, color: str = "default"):
    """Print colored output."""
    colors = {
        "blue": "\033[94m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "red": "\033[91m",
        "cyan": "\033[96m",
        "magenta": "\033[95m",
        "reset": "\033[0m",
        "default": ""
    }

    reset = colors["reset"]
    color_code = colors.get(color, "")
    print(f"{color_code}{message}{reset}")


def progress_bar(progress: int, length: int = 30) -> str:
    filled = int(length * progress / 100)
    return "█" * filled + "░" * (length - filled)


def print_table(data: dict, elapsed: float):
    """Print one status snapshot: overall bar plus a line per pipeline."""
    overall = data.get("overall_progress", 0)
    run_state = data.get("run_state", "unknown")
    print_colored(f"[{progress_bar(overall)}] {overall}% | {run_state} ({elapsed:.1f}s)", "cyan")

    for kind in data.get("enabled", []):
        state = data.get("pipelines", {}).get(kind, {})
        status = state.get("status", "idle")
        line = f"    {kind:<9} {status:<9} {state.get('progress_percent', 0):>3}%"
        if state.get("attempt"):
            line += f" (attempt {state['attempt'] + 1})"
        if state.get("error"):
            line += f" - {state['error'].get('message')}"
        print_colored(line, STATUS_COLORS.get(status, "default"))


def print_summary(data: dict):
    """Print the final per-pipeline outcome."""
    succeeded = [k for k in data.get("enabled", []) if data["pipelines"][k]["status"] == "success"]
    failed = [k for k in data.get("enabled", []) if data["pipelines"][k]["status"] == "error"]

    if data.get("run_state") == "cancelled":
        print_colored("\n\n⚠️  Run cancelled", "yellow")
    elif failed:
        print_colored(f"\n\n✓ Run completed with {len(failed)} failed pipeline(s)", "yellow")
    else:
        print_colored("\n\n✓ Run completed successfully!", "green")

    print_colored(f"\n{'='*70}", "green")
    print_colored("  📋 RESULT", "green")
    print_colored(f"{'='*70}\n", "green")

    if succeeded:
        print_colored(f"Succeeded: {', '.join(succeeded)}", "green")
    for kind in failed:
        error = data["pipelines"][kind].get("error") or {}
        retry_hint = " (retryable)" if error.get("retryable") else ""
        print_colored(f"Failed:    {kind}: {error.get('message', 'unknown error')}{retry_hint}", "red")

    if failed and data.get("run_state") == "completed":
        print_colored(
            f"\nRetry with: POST /api/v1/runs/{data.get('session_id')}/retry",
            "cyan"
        )
    print_colored(f"\n{'='*70}\n", "green")


async def watch_run(session_id: str):
    """Watch a run's progress via WebSocket."""
    ws_url = f"{WS_BASE_URL}/runs/{session_id}/stream"

    print_colored(f"\n{'='*70}", "cyan")
    print_colored(f"  🔍 Watching Session: {session_id}", "cyan")
    print_colored(f"{'='*70}\n", "cyan")

    print_colored(f"Connecting to: {ws_url}", "blue")

    try:
        async with websockets.connect(ws_url) as websocket:
            print_colored("✓ WebSocket connected!\n", "green")

            start_time = datetime.now()
            last_data = None

            async for message in websocket:
                data = json.loads(message)

                if data.get("error"):
                    print_colored(f"\n❌ Error: {data.get('message', data['error'])}", "red")
                    break

                elapsed = (datetime.now() - start_time).total_seconds()
                print_table(data, elapsed)
                last_data = data

                if data.get("run_state") in ("completed", "cancelled"):
                    print_summary(data)
                    break

            if last_data is None:
                print_colored("No status received.", "yellow")
            print_colored("Connection closed.", "blue")

    except websockets.exceptions.InvalidStatus as e:
        print_colored(f"\n❌ WebSocket connection failed: {e}", "red")
        print_colored(f"\nHTTP Status Code: {e.response.status_code}", "red")

    except websockets.exceptions.WebSocketException as e:
        print_colored(f"\n❌ WebSocket error: {e}", "red")

    except OSError as e:
        print_colored(f"\n❌ Cannot connect to {ws_url}: {e}", "red")
        print_colored("Is the API running? Start it with: uvicorn api.main:app", "yellow")


def main():
    """Main entry point."""
    if len(sys.argv) < 2:
        print_colored("\n❌ Usage: python watch_run.py <session_id>\n", "red")
        print_colored("Example:", "blue")
        print_colored("  python watch_run.py session-2024-0117\n", "blue")
        print_colored("How to start a run:", "cyan")
        print_colored("  1. Go to http://localhost:8000/api/docs", "cyan")
        print_colored("  2. Use POST /api/v1/runs with a session transcript", "cyan")
        print_colored("  3. Run: python watch_run.py <session_id>\n", "cyan")
        sys.exit(1)

    session_id = sys.argv[1].strip()

    if not session_id:
        print_colored("\n❌ Error: Session ID cannot be empty\n", "red")
        sys.exit(1)

    try:
        asyncio.run(watch_run(session_id))
    except KeyboardInterrupt:
        print_colored("\n\n⚠️  Interrupted by user", "yellow")
        sys.exit(0)


if __name__ == "__main__":
    main()
