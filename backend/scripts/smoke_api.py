#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import httpx
import websockets


async def _timed_request(
    method: str,
    client: httpx.AsyncClient,
    path: str,
    **kwargs: Any,
) -> tuple[httpx.Response, float]:
    start = time.perf_counter()
    response = await client.request(method, path, **kwargs)
    elapsed_ms = (time.perf_counter() - start) * 1000
    return response, elapsed_ms


async def _read_ws_message(ws, timeout: float = 2.0) -> Dict[str, Any]:
    raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid websocket payload: {raw}") from exc
    return {"type": "raw", "data": raw.decode("utf-8", errors="ignore")}


def _print_result(name: str, ok: bool, detail: Optional[str] = None, ms: Optional[float] = None) -> None:
    icon = "✓" if ok else "✗"
    suffix = f" ({ms:.1f}ms)" if ms is not None else ""
    print(f"{icon} {name}{suffix}")
    if detail:
        print(f"  {detail}")


async def _check_store(client: httpx.AsyncClient, caller: str, callee: str) -> None:
    payload = {"caller_id": caller, "callee_id": callee, "kind": "voice", "offer": "smoke-offer"}
    response, ms = await _timed_request("POST", client, "/api/calls", json=payload)
    call_id = response.json().get("id", "") if response.status_code == 200 else ""
    _print_result("POST /api/calls", bool(call_id), f"call_id={call_id or response.status_code}", ms)
    if not call_id:
        return

    response, ms = await _timed_request("GET", client, f"/api/identities/{callee}/calls/pending")
    pending = [row.get("id") for row in response.json()] if response.status_code == 200 else []
    _print_result("GET /api/identities/{id}/calls/pending", call_id in pending, f"pending={len(pending)}", ms)

    for status in ("ringing", "ended"):
        response, ms = await _timed_request("POST", client, f"/api/calls/{call_id}/status", json={"status": status})
        _print_result(f"POST /api/calls/{{id}}/status {status}", response.status_code == 200, None, ms)

    response, ms = await _timed_request("POST", client, f"/api/calls/{call_id}/status", json={"status": "ringing"})
    _print_result("backwards transition rejected", response.status_code == 409, f"status={response.status_code}", ms)


async def run_smoke(base_url: str, callee: str, with_ws: bool) -> None:
    base_url = base_url.rstrip("/")
    ws_url = base_url.replace("https://", "wss://").replace("http://", "ws://")

    async with httpx.AsyncClient(base_url=base_url, timeout=20.0) as client:
        response, ms = await _timed_request("GET", client, "/health")
        _print_result("GET /health", response.status_code == 200, f"status={response.status_code}", ms)

        await _check_store(client, "smoke-caller", f"{callee}-store")

        response, ms = await _timed_request("GET", client, "/api/client/state")
        _print_result(
            "GET /api/client/state",
            response.status_code == 200,
            f"active={response.json().get('has_active_call') if response.status_code == 200 else response.status_code}",
            ms,
        )

        events: List[Dict[str, Any]] = []
        if with_ws:
            async with websockets.connect(f"{ws_url}/ws/client") as ws:
                events.append(await _read_ws_message(ws))

                response, ms = await _timed_request(
                    "POST", client, "/api/client/start", json={"peer_id": callee, "kind": "voice"}
                )
                _print_result(
                    "POST /api/client/start",
                    response.status_code == 200,
                    f"status={response.json().get('status') if response.status_code == 200 else response.json().get('detail')}",
                    ms,
                )
                for _ in range(3):
                    try:
                        events.append(await _read_ws_message(ws))
                    except (TimeoutError, asyncio.TimeoutError, websockets.exceptions.ConnectionClosed):
                        break

                response, ms = await _timed_request("POST", client, "/api/client/end")
                _print_result("POST /api/client/end", response.status_code == 200, None, ms)
                try:
                    events.append(await _read_ws_message(ws, timeout=2.5))
                except (TimeoutError, asyncio.TimeoutError, websockets.exceptions.ConnectionClosed):
                    pass

            statuses = {
                event.get("data", {}).get("status")
                for event in events
                if event.get("type") == "call_state"
            }
            _print_result("WebSocket call_state events", bool(events), f"statuses={sorted(s for s in statuses if s)}")
            print(f"  received_events={len(events)}")
        else:
            response, ms = await _timed_request(
                "POST", client, "/api/client/start", json={"peer_id": callee, "kind": "voice"}
            )
            _print_result("POST /api/client/start", response.status_code == 200, f"status={response.status_code}", ms)
            response, ms = await _timed_request("POST", client, "/api/client/end")
            _print_result("POST /api/client/end", response.status_code == 200, None, ms)

        response, ms = await _timed_request("GET", client, "/api/telemetry/recent?component=http&limit=10")
        _print_result(
            "GET /api/telemetry/recent",
            response.status_code == 200,
            f"events={response.json().get('count') if response.status_code == 200 else response.status_code}",
            ms,
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="peerline backend CLI smoke test")
    parser.add_argument("--base-url", default="http://127.0.0.1:3001")
    parser.add_argument("--callee", default="smoke-callee")
    parser.add_argument("--no-websocket", action="store_true", help="skip websocket feed assertions")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    await run_smoke(args.base_url, args.callee, with_ws=not args.no_websocket)


if __name__ == "__main__":
    asyncio.run(main())
