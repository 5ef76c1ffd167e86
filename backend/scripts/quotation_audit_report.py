#!/usr/bin/env python3
import argparse
import json
import os
import sqlite3
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_DB = Path(__file__).resolve().parents[1] / "data" / "quoteflow.sqlite3"


def _load_transitions(db_path: str) -> List[Dict[str, Any]]:
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        rows = conn.execute(
            """
            SELECT t.quotation_id, t.request_id, t.from_status, t.to_status, t.event, t.created_at,
                   q.created_at AS quotation_created_at
            FROM quotation_transitions t
            JOIN quotations q ON q.id = t.quotation_id
            ORDER BY t.created_at ASC
            """
        ).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]


def _minutes_between(start: str, end: str) -> Optional[float]:
    try:
        return (datetime.fromisoformat(end) - datetime.fromisoformat(start)).total_seconds() / 60
    except (TypeError, ValueError):
        return None


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    event_counts: Counter[str] = Counter()
    outcome_counts: Counter[str] = Counter()
    requests = set()
    fulfilled_requests = set()
    response_minutes: List[float] = []

    for row in rows:
        event_counts[str(row["event"])] += 1
        outcome_counts[f"{row['from_status']}->{row['to_status']}"] += 1
        requests.add(row["request_id"])
        if row["to_status"] == "accepted":
            fulfilled_requests.add(row["request_id"])
        if row["event"] == "submit_quote":
            minutes = _minutes_between(row["quotation_created_at"], row["created_at"])
            if minutes is not None:
                response_minutes.append(minutes)

    total_requests = len(requests)
    avg_response = (sum(response_minutes) / len(response_minutes)) if response_minutes else 0.0
    fulfilment_rate = (len(fulfilled_requests) / total_requests) if total_requests else 0.0
    return {
        "total_transitions": len(rows),
        "requests_with_activity": total_requests,
        "fulfilled_requests": len(fulfilled_requests),
        "fulfilment_rate": round(fulfilment_rate, 4),
        "event_counts": dict(event_counts),
        "transition_counts": dict(outcome_counts),
        "avg_quote_response_minutes": round(avg_response, 2),
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total transitions: {report['total_transitions']}")
    print(
        f"Requests: {report['requests_with_activity']} active, {report['fulfilled_requests']} fulfilled "
        f"({report['fulfilment_rate']:.2%})"
    )
    print(f"Average quote response: {report['avg_quote_response_minutes']:.1f} minutes")
    print("Events:")
    for event, count in sorted(report["event_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {event}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize the quotation transition history.")
    parser.add_argument("--db", default=os.getenv("QUOTEFLOW_DB_PATH", str(DEFAULT_DB)), help="SQLite database path.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    if not Path(args.db).exists():
        parser.error(f"database not found: {args.db}")

    report = build_report(_load_transitions(args.db))
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
