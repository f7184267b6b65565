from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional, Type

from .db.mongo import MODELS
from .models.base import DBSerializableModel


def generate_logical_schema(
    models: Optional[List[Type[DBSerializableModel]]] = None,
) -> Dict[str, Any]:
    """
    Backend-agnostic schema for every persisted billing model, keyed by
    collection name. Index declarations are included so the same output
    can drive Mongo validators and index creation scripts.
    """
    return {model.collection_name: model.db_schema() for model in (models or MODELS)}


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    return json.dumps(schema, indent=2, default=str)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Print the logical schema of the voice billing collections as JSON."
    )
    parser.add_argument(
        "--collection",
        action="append",
        help="Only include this collection (repeatable).",
    )
    args = parser.parse_args(argv)

    schema = generate_logical_schema()
    if args.collection:
        unknown = sorted(set(args.collection) - set(schema))
        if unknown:
            parser.error(f"unknown collection(s): {', '.join(unknown)}")
        schema = {name: schema[name] for name in args.collection}

    print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
