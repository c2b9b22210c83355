#!/usr/bin/env python3
"""
P&L Matrix - Main Entry Point

Usage:
    python main.py build --year 2025          # Build the statement and print a summary
    python main.py export --year 2025         # Write the statement workbook
    python main.py serve                      # Start the HTTP API
    python main.py setup                      # Validate configuration
"""
import os
import sys
import json
import argparse
import logging
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

logger = logging.getLogger(__name__)


def setup_environment():
    """Load environment variables from .env file if present."""
    env_file = PROJECT_ROOT / '.env'
    if env_file.exists():
        with open(env_file, encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())


def configure_logging():
    """Console plus pnl_matrix.log, at LOG_LEVEL."""
    level = getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler('pnl_matrix.log'),
        ]
    )


def _build_tree(year):
    import asyncio
    from pnl_matrix.api.service import get_pnl_service

    response = asyncio.run(get_pnl_service().get_tree(year))
    if not response.ok:
        print(f"\n❌ {response.error['user_message']} ({response.error['message']})")
        sys.exit(1)
    return response.data


def cmd_build(args):
    """Build the statement for one year."""
    from pnl_matrix.core.reporting_calendar import current_year, month_keys, parse_year
    from pnl_matrix.tools.calculator import fmt_plain_br

    rows = _build_tree(args.year)
    if args.json:
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return

    year = parse_year(args.year) if args.year else current_year()
    months = month_keys(year)

    print("\n" + "="*60)
    print(f"P&L {year}")
    print("="*60)
    for row in rows:
        if 'parentId' in row or row['kind'] in ('percentage', 'detailPercentage'):
            continue
        total = sum(row['values'].get(m, 0.0) for m in months)
        print(f"  {row['label']:<40} {fmt_plain_br(total):>16}")
    print("-"*60)
    print(f"  {len(rows)} rows")


def cmd_export(args):
    """Write the statement workbook."""
    from pnl_matrix.core.nodes import NodeKind, PnLNode, Sign
    from pnl_matrix.core.reporting_calendar import current_year, parse_year
    from pnl_matrix.tools.excel_output import get_excel_generator

    rows = _build_tree(args.year)
    nodes = [
        PnLNode(
            id=r['id'],
            label=r['label'],
            values=r['values'],
            parent_id=r.get('parentId'),
            sign=Sign(r['sign']) if r.get('sign') else None,
            kind=NodeKind(r['kind']),
        )
        for r in rows
    ]
    year = parse_year(args.year) if args.year else current_year()

    output = get_excel_generator(args.output).write_pnl(nodes, year)
    print(f"\n📊 Workbook written: {output.file_path} ({output.row_count} rows)")


def cmd_serve(args):
    """Start the HTTP API."""
    import uvicorn
    from config.settings import get_config

    api = get_config().api
    host = args.host or api.host
    port = args.port or api.port
    logger.info(f"Starting API on {host}:{port}")
    uvicorn.run("pnl_matrix.api.app:app", host=host, port=port, log_level=os.getenv('LOG_LEVEL', 'info').lower())


def cmd_setup(args):
    """Validate configuration and setup."""
    from config.settings import get_config

    print("\n" + "="*60)
    print("CONFIGURATION VALIDATION")
    print("="*60)

    config = get_config()

    def report(checks):
        for name, value in checks:
            status = "✅" if value else "❌"
            print(f"   {status} {name}: {'Set' if value else 'MISSING'}")

    print(f"\n🏭 Warehouse (BigQuery):")
    wh = config.warehouse
    report([
        ("Project ID (BQ_PROJECT_ID)", wh.project_id),
        ("Table (BQ_TABLE)", wh.table),
    ])
    if wh.table:
        try:
            wh.qualified_table
        except ValueError as e:
            print(f"   ❌ {e}")
    print(f"   ℹ️  Keyfile (BQ_KEYFILE): {wh.keyfile or 'application default credentials'}")

    print(f"\n📒 Ledger (MySQL):")
    ledger = config.ledger
    if ledger.url:
        report([("Connection URL (MYSQL_URL)", ledger.url)])
    else:
        report([
            ("Host (MYSQL_HOST)", ledger.host),
            ("Database (MYSQL_DATABASE)", ledger.database),
            ("User (MYSQL_USER)", ledger.user),
        ])
    print(f"   ℹ️  Pool: size={ledger.pool_size}, overflow={ledger.max_overflow}, recycle={ledger.pool_recycle}s")

    print(f"\n✏️  Corrections:")
    path = config.corrections.path
    print(f"   {'✅' if path.exists() else 'ℹ️ '} {path} {'' if path.exists() else '(not found, no corrections applied)'}")

    print(f"\n📁 Export directory: {config.export.output_dir}")
    print(f"🌐 API: {config.api.host}:{config.api.port}")
    print(f"📝 Log level: {config.log_level}")

    print("\n" + "="*60)


def main():
    setup_environment()
    configure_logging()

    parser = argparse.ArgumentParser(
        description="P&L Matrix",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py build --year 2025          Print the yearly statement
  python main.py build --json               Current year as JSON
  python main.py export --year 2025         Write PNL_<timestamp>.xlsx
  python main.py serve --port 8080          Start the API
  python main.py setup                      Check configuration

Environment Variables:
  BQ_PROJECT_ID, BQ_TABLE       Invoice warehouse
  MYSQL_URL or MYSQL_HOST/...   Expense ledger
  PNL_CORRECTIONS_FILE          Manual corrections (YAML)
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Build command
    build_parser = subparsers.add_parser('build', help='Build the statement')
    build_parser.add_argument('--year', help='Reporting year (default: current year)')
    build_parser.add_argument('--json', action='store_true', help='Print rows as JSON')
    build_parser.set_defaults(func=cmd_build)

    # Export command
    export_parser = subparsers.add_parser('export', help='Write the statement workbook')
    export_parser.add_argument('--year', help='Reporting year (default: current year)')
    export_parser.add_argument('--output', help='Output directory (default: PNL_EXPORT_DIR)')
    export_parser.set_defaults(func=cmd_export)

    # Serve command
    serve_parser = subparsers.add_parser('serve', help='Start the HTTP API')
    serve_parser.add_argument('--host', help='Bind address (default: PNL_API_HOST)')
    serve_parser.add_argument('--port', type=int, help='Port (default: PNL_API_PORT)')
    serve_parser.set_defaults(func=cmd_serve)

    # Setup command
    setup_parser = subparsers.add_parser('setup', help='Validate setup')
    setup_parser.set_defaults(func=cmd_setup)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
