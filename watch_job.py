import argparse
import json
import os
import sys
from typing import Any, Dict, Iterable, List, Optional

import httpx


TERMINAL_EXIT_CODES = {"completed": 0, "failed": 1, "cancelled": 1}


def resolve_base_url(base_url: Optional[str], port: Optional[int]) -> str:
    if base_url:
        return base_url.rstrip("/")
    env_port = None
    if os.getenv("PORT", "").strip().isdigit():
        env_port = int(os.getenv("PORT", "").strip())
    return f"http://127.0.0.1:{port or env_port or 8000}"


def iter_sse_events(lines: Iterable[str]) -> Iterable[Dict[str, Any]]:
    """Group `event:`/`data:` lines into `{"event_type", "payload"}` dicts; comments are skipped."""
    event_type = "message"
    data_lines: List[str] = []
    for raw_line in lines:
        if raw_line is None:
            continue
        line = raw_line.rstrip("\r")
        if not line.strip():
            if data_lines:
                joined = "\n".join(data_lines)
                data_lines.clear()
                try:
                    yield {"event_type": event_type, "payload": json.loads(joined)}
                except json.JSONDecodeError:
                    pass
            event_type = "message"
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_type = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        try:
            yield {"event_type": event_type, "payload": json.loads("\n".join(data_lines))}
        except json.JSONDecodeError:
            return


def format_event(event: Dict[str, Any]) -> Optional[str]:
    event_type = event.get("event_type")
    payload = event.get("payload") or {}
    seq = payload.get("seq", "?")
    if event_type == "log":
        return f"[{seq}] {payload.get('level', 'info')}: {payload.get('message', '')}"
    if event_type == "status":
        return f"[{seq}] status -> {payload.get('status')}"
    if event_type == "plan":
        steps = payload.get("steps") or []
        return f"[{seq}] plan: {len(steps)} steps"
    if event_type == "result":
        return f"[{seq}] report:\n\n{payload.get('report', '')}"
    return None


def safe_print(text: str) -> None:
    try:
        print(text, flush=True)
    except UnicodeEncodeError:
        print(text.encode("ascii", errors="replace").decode("ascii"), flush=True)


def exit_code_for(event: Dict[str, Any]) -> Optional[int]:
    if event.get("event_type") == "result":
        return 0
    if event.get("event_type") == "status":
        status = (event.get("payload") or {}).get("status")
        if status in ("failed", "cancelled"):
            return TERMINAL_EXIT_CODES[status]
    return None


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Start a research job and stream its events.")
    parser.add_argument("topic", nargs="*", help="Research topic.")
    parser.add_argument("--job-id", help="Attach to an existing job instead of starting a new one.")
    parser.add_argument("--base-url", help="Base URL for the app (ex: http://127.0.0.1:8000).")
    parser.add_argument("--port", type=int, help="Port override if base URL is not set.")
    args = parser.parse_args(argv)

    base_url = resolve_base_url(args.base_url, args.port)
    topic = " ".join(args.topic).strip()
    if not topic and not args.job_id:
        parser.error("a topic or --job-id is required")

    timeout = httpx.Timeout(10.0, read=None)
    try:
        with httpx.Client(timeout=timeout) as client:
            job_id = args.job_id
            if not job_id:
                resp = client.post(f"{base_url}/api/v1/jobs", json={"topic": topic})
                resp.raise_for_status()
                job_id = resp.json().get("job_id")
                if not job_id:
                    print("Server did not return a job_id.", file=sys.stderr)
                    return 1
                safe_print(f"Job started: {job_id}")
            else:
                safe_print(f"Attaching to job: {job_id}")

            with client.stream("GET", f"{base_url}/api/v1/jobs/{job_id}/events") as response:
                response.raise_for_status()
                for event in iter_sse_events(response.iter_lines()):
                    line = format_event(event)
                    if line:
                        safe_print(line)
                    code = exit_code_for(event)
                    if code is not None:
                        return code

            # Stream closed after replay: the job was already terminal.
            resp = client.get(f"{base_url}/api/v1/jobs/{job_id}")
            resp.raise_for_status()
            status = resp.json().get("status")
            safe_print(f"Job {job_id} is {status}")
            return TERMINAL_EXIT_CODES.get(status, 1)
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    except httpx.HTTPError as exc:
        print(f"HTTP error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
