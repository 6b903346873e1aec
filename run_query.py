#!/usr/bin/env python3
"""
CLI entry point for offline JQL conversion and record joins.

Converts or validates a JQL string against an index allow-list, and joins
two exported record files (NDJSON or JSON array) without a search engine.
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from jql_engine import JoinEngine, JoinSource, JoinSpec, JQLConverter
from jql_engine.config import LOG_FORMAT, Settings, load_settings
from jql_engine.errors import JQLEngineError
from jql_engine.models import SOURCE_INDEX
from jql_engine.sources import SourceFetcher, StaticSearchClient


logger = logging.getLogger("run_query")


def serialize_for_json(obj: Any) -> Any:
    """Recursively serialize objects for JSON output.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable version of the object
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, dict):
        return {k: serialize_for_json(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [serialize_for_json(item) for item in obj]
    else:
        return obj


def load_records(input_file: str) -> List[Dict[str, Any]]:
    """Load records from an NDJSON or JSON array file.

    Args:
        input_file: Path to input file (NDJSON or JSON)

    Returns:
        List of record dictionaries

    Raises:
        ValueError: If the file is missing or malformed
    """
    records: List[Dict[str, Any]] = []
    path = Path(input_file)

    if not path.exists():
        raise ValueError(f"Input file not found: {input_file}")

    content = path.read_text().strip()
    if not content:
        return records

    if content.startswith('['):
        try:
            records = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array: {e}")
        if not all(isinstance(record, dict) for record in records):
            raise ValueError("JSON must be an array of objects")
        return records

    for line_num, line in enumerate(content.split('\n'), 1):
        line = line.strip()
        if not line:
            continue

        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"Line {line_num}: Invalid JSON: {e}")
        if not isinstance(record, dict):
            raise ValueError(f"Line {line_num}: Record must be a JSON object")
        records.append(record)

    return records


def build_converter(settings: Settings, allowed: Optional[str]) -> JQLConverter:
    """Create a converter, letting --allowed replace the configured allow-list."""
    allowed_indexes = settings.allowed_indexes
    if allowed:
        allowed_indexes = [index.strip() for index in allowed.split(',') if index.strip()]
    return JQLConverter(allowed_indexes, settings.project_index_mapping)


def write_output(output: Dict[str, Any], output_file: Optional[str] = None) -> None:
    text = json.dumps(serialize_for_json(output), indent=2)
    if output_file:
        Path(output_file).write_text(text)
        logger.info("Results saved to %s", output_file)
    else:
        print(text)


def run_convert(args: argparse.Namespace, settings: Settings) -> int:
    converter = build_converter(settings, args.allowed)
    validation = converter.validate(args.jql)
    if not validation.is_valid:
        print(json.dumps({"error": "Invalid JQL", "details": validation.errors}, indent=2), file=sys.stderr)
        return 1

    compiled = converter.convert(args.jql)
    write_output({
        "query": compiled.query,
        "indexes": compiled.indexes,
        "sort": compiled.sort,
        "limit": compiled.limit,
    }, args.output)
    return 0


def run_validate(args: argparse.Namespace, settings: Settings) -> int:
    converter = build_converter(settings, args.allowed)
    validation = converter.validate(args.jql)
    write_output({
        "is_valid": validation.is_valid,
        "errors": validation.errors,
        "warnings": validation.warnings,
    }, args.output)
    return 0 if validation.is_valid else 1


def run_join(args: argparse.Namespace, settings: Settings) -> int:
    """Join two record files; each file is served as an index named after its stem.

    Files sharing a stem are served as left_<stem> and right_<stem>.
    """
    left_name = Path(args.left_file).stem
    right_name = Path(args.right_file).stem
    if left_name == right_name:
        left_name, right_name = f"left_{left_name}", f"right_{right_name}"

    logger.info("Loading records from %s and %s", args.left_file, args.right_file)
    records = {
        left_name: load_records(args.left_file),
        right_name: load_records(args.right_file),
    }
    logger.info(
        "Loaded %d left and %d right record(s)",
        len(records[left_name]), len(records[right_name]),
    )

    engine = JoinEngine(
        SourceFetcher(StaticSearchClient(records)),
        settings.max_pairs_per_key,
    )
    spec = JoinSpec(
        left=JoinSource(type=SOURCE_INDEX, id=left_name),
        right=JoinSource(type=SOURCE_INDEX, id=right_name),
        left_field=args.left_field,
        right_field=args.right_field,
        join_type=args.join_type,
        limit=args.limit,
    )
    result = engine.execute(spec, from_=args.from_, size=args.size)

    write_output({
        "took_ms": result.took_ms,
        "total_results": result.total_results,
        "join_summary": result.summary.to_dict(),
        "results": [record.to_dict() for record in result.results],
        "aggregations": {
            "join_field_distribution": result.distribution,
            "index_distribution": result.index_distribution,
        },
    }, args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="JQL Engine - Convert JQL queries and join record files"
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to YAML config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "-o", "--output",
        help="Output file path",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("convert", "Print the Elasticsearch query for a JQL string"),
        ("validate", "Validate a JQL string"),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("jql", help="JQL query string")
        command.add_argument(
            "--allowed",
            help="Comma-separated index allow-list (overrides the config)",
        )

    join = subparsers.add_parser("join", help="Join two record files")
    join.add_argument("left_file", help="Left records (NDJSON or JSON array)")
    join.add_argument("right_file", help="Right records (NDJSON or JSON array)")
    join.add_argument("--left-field", required=True, help="Join field in the left records")
    join.add_argument("--right-field", required=True, help="Join field in the right records")
    join.add_argument("--join-type", default="inner", help="inner, left, right or full")
    join.add_argument("--limit", type=int, help="Maximum records fetched per side")
    join.add_argument("--from", dest="from_", type=int, default=0, help="Result offset")
    join.add_argument("--size", type=int, default=100, help="Page size")

    return parser


COMMANDS = {
    "convert": run_convert,
    "validate": run_validate,
    "join": run_join,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 1

    # Progress goes to stderr so stdout stays valid JSON
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )

    try:
        return COMMANDS[args.command](args, settings)
    except (JQLEngineError, ValueError) as e:
        print(json.dumps({"error": str(e)}, indent=2), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
