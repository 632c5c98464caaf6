"""
Command line interface.

Usage:
    skymosaic build DATA_DIR DB_PATH [--data-revision REV] [--force]
    skymosaic inspect DB_PATH
    skymosaic query DB_PATH QUERY
    skymosaic register DB_PATH QUERY
    skymosaic tile DB_PATH QUERY ORDER PIX [-o FILE]
    skymosaic manifest DB_PATH

QUERY is a JSON document, or @path to read one from a file.
"""

import argparse
import json
import logging
import sys

from . import __version__
from .config import get_settings
from .errors import SkyMosaicError
from .query.database import Database, inspect
from .query.engine import QueryEngine
from .query.lifecycle import prepare_database, resolve_code_revision
from .query.models import ServerInfo
from .query.tiles import TileGenerator
from .service.survey import SurveyService

logger = logging.getLogger("skymosaic")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _load_query(text: str) -> dict:
    if text.startswith("@"):
        with open(text[1:], encoding="utf-8") as f:
            text = f.read()
    try:
        return json.loads(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid query JSON: {e}") from e


def _print_json(data):
    print(json.dumps(data, indent=2, sort_keys=True))


def cmd_build(args) -> int:
    server_info = ServerInfo(
        version=__version__,
        data_revision=args.data_revision,
        code_revision=args.code_revision or resolve_code_revision("."),
        data_local_modifications=args.local_modifications,
    )
    state, info = prepare_database(
        args.data_dir, args.db_path, server_info, force=args.force, settings=get_settings()
    )
    logger.info("Database state was %s", state.value)
    _print_json(info.model_dump())
    return 0


def cmd_inspect(args) -> int:
    _print_json(inspect(args.db_path).model_dump())
    return 0


def cmd_query(args) -> int:
    with Database.open(args.db_path) as database:
        _print_json(QueryEngine(database).query(args.query))
    return 0


def cmd_register(args) -> int:
    with SurveyService.open(args.db_path) as service:
        print(service.register_query(args.query))
    return 0


def cmd_tile(args) -> int:
    with Database.open(args.db_path) as database:
        payload = TileGenerator(database).fetch_tile(args.query, args.order, args.pix)
    if args.output:
        with open(args.output, "wb") as f:
            f.write(payload)
    else:
        sys.stdout.write(payload.decode("utf-8") + "\n")
    return 0


def cmd_manifest(args) -> int:
    with Database.open(args.db_path) as database:
        sys.stdout.write(TileGenerator(database).manifest())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="skymosaic",
        description="Survey footprint database, queries and HEALPix tiles",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("build", help="Build (or reuse) a database from a data directory")
    p.add_argument("data_dir")
    p.add_argument("db_path")
    p.add_argument("--data-revision", default="", help="Revision of the survey data")
    p.add_argument("--code-revision", default=None, help="Defaults to extraVersionHash.txt")
    p.add_argument("--local-modifications", action="store_true",
                   help="Data has uncommitted changes; always rebuild")
    p.add_argument("--force", action="store_true", help="Rebuild even if up to date")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("inspect", help="Show database metadata")
    p.add_argument("db_path")
    p.set_defaults(func=cmd_inspect)

    p = sub.add_parser("query", help="Evaluate a query")
    p.add_argument("db_path")
    p.add_argument("query", type=_load_query)
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("register", help="Print the Query Hash of a query")
    p.add_argument("db_path")
    p.add_argument("query", type=_load_query)
    p.set_defaults(func=cmd_register)

    p = sub.add_parser("tile", help="Render one GeoJSON tile")
    p.add_argument("db_path")
    p.add_argument("query", type=_load_query)
    p.add_argument("order", type=int, help="HEALPix order, -1 for all-sky")
    p.add_argument("pix", type=int)
    p.add_argument("-o", "--output", default=None)
    p.set_defaults(func=cmd_tile)

    p = sub.add_parser("manifest", help="Print HiPS properties")
    p.add_argument("db_path")
    p.set_defaults(func=cmd_manifest)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    try:
        return args.func(args)
    except SkyMosaicError as e:
        logger.error("%s (%s)", e, type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
