"""Text and CSV rendering of stored test records."""

import csv
import io

CSV_HEADER = ["test_id", "timestamp", "duration", "result"]
NOT_FOUND_TEXT = "No test record found for this ID"


def format_single(record):
    """Multi-line summary of one record, as printed after a run and by `get`."""
    return "\n".join([
        f"Test ID: {record.test_id}",
        f"Start Time: {record.timestamp}",
        f"Duration: {record.duration:g} seconds",
        f"Result: {'Success' if record.all_success else 'Failure'}",
    ])


def format_not_found(test_id):
    return f"{NOT_FOUND_TEXT} ({test_id})"


def format_csv(records):
    """CSV export: header row plus one row per record, ascending by test id."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in sorted(records, key=lambda r: r.test_id):
        writer.writerow([record.test_id, record.timestamp, f"{record.duration:g}", int(bool(record.all_success))])
    return buf.getvalue()


def record_to_dict(record):
    """JSON-friendly form used by the HTTP API."""
    return {
        "test_id": record.test_id,
        "timestamp": record.timestamp,
        "duration": record.duration,
        "all_success": bool(record.all_success),
        "result": "Success" if record.all_success else "Failure",
    }
