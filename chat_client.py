# chat_client.py
"""
Command-line client for the Mentor gateway.

Usage (from project root):
    python chat_client.py --topic general-support "How do I size my first market?"
    python chat_client.py --topic 3-12 --file notes.pdf "Review my draft"
    python chat_client.py --topic 3-12 --clear
    python chat_client.py --research "EV battery recycling regulation in the EU"

This script:
  - Checks that the API is up via /health.
  - Streams /chat and prints visible text as it arrives (control frames stripped).
  - Keeps the memory token and the last turns per topic in a local JSON file,
    so the next message continues the conversation.
  - --clear discards the stored token and history for a topic.
  - --research kicks off a background deep-research job and polls it.
"""

import argparse
import json
import mimetypes
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from mentor.core.stream import StreamDecoder

# Must match the FastAPI server address & port
DEFAULT_API_BASE = "http://127.0.0.1:8000"
DEFAULT_STORE = Path(".mentor_sessions.json")

POLL_INTERVAL_SECONDS = 1.8
MAX_STORED_TURNS = 8

# Keep in sync with MAX_ATTACHMENT_BYTES in mentor/core/attachments.py
MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024


# ---------------------------------------------------------------------------
# Local session store
# ---------------------------------------------------------------------------

def load_store(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        print(f"[warn] Could not read session store {path}: {e}. Starting fresh.")
        return {}
    return data if isinstance(data, dict) else {}


def save_store(path: Path, store: Dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(store, f, ensure_ascii=False, indent=2)


def topic_session(store: Dict[str, Any], topic: str) -> Dict[str, Any]:
    session = store.get(topic)
    if not isinstance(session, dict):
        session = {"token": None, "history": []}
        store[topic] = session
    return session


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def auth_headers(caller_id: str) -> Dict[str, str]:
    return {"X-Caller-Id": caller_id}


def health_check(api_base: str) -> None:
    url = f"{api_base.rstrip('/')}/health"
    resp = requests.get(url, timeout=5)
    if resp.status_code != 200:
        raise RuntimeError(f"/health returned status {resp.status_code}: {resp.text!r}")
    print(f"[health] OK. status={resp.json().get('status')}")


def load_attachment(path: Path):
    if not path.exists() or not path.is_file():
        raise FileNotFoundError(f"Attachment not found: {path}")
    size = path.stat().st_size
    if size > MAX_ATTACHMENT_BYTES:
        raise ValueError(f"Attachment too large ({size} bytes); max allowed is {MAX_ATTACHMENT_BYTES} bytes.")
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    field = "pdf" if mime == "application/pdf" else "file"
    return field, (path.name, path.read_bytes(), mime)


def stream_chat(
    api_base: str,
    caller_id: str,
    topic: str,
    message: str,
    model: Optional[str],
    session: Dict[str, Any],
    attachment: Optional[Path] = None,
) -> Dict[str, Any]:
    url = f"{api_base.rstrip('/')}/chat"
    headers = auth_headers(caller_id)
    if session.get("token"):
        headers["X-Summary-Token"] = session["token"]

    data = {
        "topicId": topic,
        "message": message,
        "history": json.dumps(session.get("history") or [], ensure_ascii=False),
    }
    if model:
        data["model"] = model

    files = None
    if attachment is not None:
        field, payload = load_attachment(attachment)
        files = {field: payload}
        print(f"[info] Attaching {attachment} as '{field}' ({payload[2]}, {len(payload[1])} bytes)")

    decoder = StreamDecoder()
    with requests.post(url, data=data, files=files, headers=headers, stream=True, timeout=(5, 600)) as resp:
        if resp.status_code != 200:
            raise RuntimeError(f"/chat returned status {resp.status_code}: {resp.text!r}")
        for chunk in resp.iter_content(chunk_size=None):
            visible = decoder.feed(chunk)
            if visible:
                sys.stdout.write(visible)
                sys.stdout.flush()
    tail = decoder.finish()
    if tail:
        sys.stdout.write(tail)
    sys.stdout.write("\n")

    result = decoder.result()
    if result.session_info:
        print(f"[info] Assistant: {result.session_info.get('ai_name') or '(unnamed)'}")
    return {"text": result.visible_text.strip(), "token": result.memory_token}


def run_research(api_base: str, caller_id: str, query: str, system: Optional[str]) -> int:
    base = api_base.rstrip("/")
    payload: Dict[str, Any] = {"query": query, "useRewriter": True}
    if system:
        payload["system"] = system

    resp = requests.post(f"{base}/deep-research", params={"background": "1"}, json=payload,
                         headers=auth_headers(caller_id), timeout=120)
    if resp.status_code != 200:
        raise RuntimeError(f"/deep-research returned status {resp.status_code}: {resp.text!r}")
    job = resp.json()
    job_id = job.get("id")
    print(f"[research] job={job_id} status={job.get('status')}")

    while True:
        time.sleep(POLL_INTERVAL_SECONDS)
        resp = requests.get(f"{base}/deep-research/{job_id}", headers=auth_headers(caller_id), timeout=30)
        if resp.status_code != 200:
            raise RuntimeError(f"poll returned status {resp.status_code}: {resp.text!r}")
        data = resp.json()
        status = data.get("status")
        if status == "queued":
            print(".", end="", flush=True)
            continue
        print()
        if status != "completed":
            print(f"[research] {status}: {data.get('error')}")
            return 1
        print(data.get("text") or "")
        citations: List[Dict[str, Any]] = data.get("citations") or []
        if citations:
            print("\nSources:")
            for c in citations:
                print(f"  - {c.get('title') or 'link'}: {c.get('url')}")
        return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Command-line client for the Mentor gateway.")
    parser.add_argument("message", nargs="?", default=None, help="Message (or research query with --research).")
    parser.add_argument("--topic", default="general-support", help="Topic id: 'general-support' or '<term>-<n>'.")
    parser.add_argument("--model", default=None, help="Model name; 'deepresearch' selects research mode.")
    parser.add_argument("--file", "-f", default=None, help="Optional PDF or image to attach.")
    parser.add_argument("--caller", default="local-dev", help="Caller id sent as X-Caller-Id.")
    parser.add_argument("--api-base", default=DEFAULT_API_BASE, help=f"API base URL (default: {DEFAULT_API_BASE})")
    parser.add_argument("--store", default=str(DEFAULT_STORE), help="Local JSON file for tokens and history.")
    parser.add_argument("--clear", action="store_true", help="Forget the stored token and history for the topic.")
    parser.add_argument("--research", action="store_true", help="Run a background deep-research job and poll it.")
    parser.add_argument("--system", default=None, help="Optional system prompt for --research.")
    args = parser.parse_args(argv)

    store_path = Path(args.store)
    store = load_store(store_path)

    if args.clear:
        store.pop(args.topic, None)
        save_store(store_path, store)
        print(f"[info] Cleared memory for topic {args.topic!r}.")
        if not args.message:
            return 0

    if not args.message:
        parser.error("a message is required")

    try:
        health_check(args.api_base)

        if args.research:
            return run_research(args.api_base, args.caller, args.message, args.system)

        session = topic_session(store, args.topic)
        reply = stream_chat(
            args.api_base,
            args.caller,
            args.topic,
            args.message,
            args.model,
            session,
            attachment=Path(args.file) if args.file else None,
        )

        history = list(session.get("history") or [])
        history.append({"role": "user", "content": args.message})
        if reply["text"]:
            history.append({"role": "assistant", "content": reply["text"]})
        session["history"] = history[-MAX_STORED_TURNS:]
        if reply["token"]:
            session["token"] = reply["token"]
        else:
            print("[info] No refreshed memory token in this response; keeping the previous one.")
        save_store(store_path, store)

    except (requests.RequestException, RuntimeError, OSError, ValueError) as e:
        print(f"[fatal] {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
