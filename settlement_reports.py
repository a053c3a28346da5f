"""
Settlement P&L command line.

Uploads settlement files and the cost master into the database, reconciles
uploads against the master, stores the result per upload id and exports it
as an Excel workbook. ``analyze-file`` runs the same engine on local files
without a database.
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Dict, List

from tqdm import tqdm

from settlement_config import DEFAULT_MARKETPLACE, LOG_FILE, MARKETPLACE_ALIASES, OUTPUT_DIR, configure_logging
from settlement_errors import SettlementError
from settlement_pnl import monthly_report
from settlement_reconcile import analyze
from settlement_spreadsheets import output_filename, read_records, write_workbook

logger = logging.getLogger(__name__)


def print_quality_report(result: Dict) -> None:
    """Console summary of one analysis run, written through tqdm so an active bar stays intact."""
    tables = result["summary_tables"]
    totals = result["totals"]
    inactive = tables["inactive_sku_summary"][0]
    missing_skus = sorted({row["sku"] for row in tables["missing_cost_orders"]})

    tqdm.write("=" * 80)
    tqdm.write(f"📦 Orders: {totals['order_count']}  |  Units: {totals['units_sold']}")
    tqdm.write(f"💰 Sales: {totals['sales']:,.2f}  |  COGS: {totals['cogs']:,.2f}  |  Net: {totals['net_profit']:,.2f}")
    tqdm.write(f"↩️  Refunds: {totals['refund_count']} ({totals['refund_amount']:,.2f})")
    tqdm.write(f"📉 Negative-margin orders: {len(tables['negative_orders'])}")
    if missing_skus:
        tqdm.write(f"⚠️  SKUs without cost: {len(missing_skus)}")
        sample = missing_skus[:20]
        tqdm.write(f"    {', '.join(sample)}" + (f" ... and {len(missing_skus) - 20} more" if len(missing_skus) > 20 else ""))
        tqdm.write("    💡 Add these SKUs to the master file with their unit cost")
    else:
        tqdm.write("✅ Every SKU in this file has a cost")
    tqdm.write(
        f"💤 Inactive master SKUs: {inactive['skus_with_no_orders_in_file']}"
        f"/{inactive['total_master_skus']} ({inactive['percent_inactive']}%)"
    )
    tqdm.write("=" * 80)


def export_workbook(result: Dict, output_dir: str, filename: str) -> Path:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / filename
    write_workbook(result["summary_tables"], out_path)
    print(f"✓ Workbook written: {out_path}")
    return out_path


# --- Commands ---
async def cmd_upload(args) -> int:
    from settlement_store import SettlementStore

    path = Path(args.file)
    rows = read_records(path)
    async with SettlementStore(batch_size=args.batch_size) as store:
        upload_id = await store.create_upload(path.name, path.name, args.marketplace, rows)
    print(f"✅ Uploaded {len(rows)} rows from {path.name}")
    print(f"   Upload id: {upload_id}")
    return 0


async def cmd_master(args) -> int:
    from settlement_store import SettlementStore

    rows = read_records(args.file)
    async with SettlementStore(batch_size=args.batch_size) as store:
        count = await store.replace_master(args.marketplace, rows)
    print(f"✅ {args.marketplace} master replaced: {count} rows")
    return 0


async def cmd_analyze(args) -> int:
    from settlement_store import SettlementStore

    failures = 0
    async with SettlementStore(batch_size=args.batch_size) as store:
        for upload_id in tqdm(args.upload_ids, desc="⚡ Analyzing uploads", unit="upload"):
            start_time = time.time()
            try:
                upload = await store.get_upload(upload_id)
                marketplace = upload["marketplace"]
                rows = await store.load_rows(upload_id)
                master = await store.load_master(marketplace)

                result = analyze(rows, master, marketplace)
                filename = output_filename(upload["original_name"])
                await store.save_result(upload_id, marketplace, filename if not args.no_export else "", result)
                if not args.no_export:
                    export_workbook(result, args.output_dir, filename)

                tqdm.write(f"\n📊 {upload['original_name']} ({marketplace}) in {time.time() - start_time:.1f}s")
                print_quality_report(result)
            except SettlementError as e:
                failures += 1
                logger.error(f"{upload_id}: {e}")
    return 1 if failures else 0


async def cmd_analyze_file(args) -> int:
    rows = read_records(args.file)
    master = read_records(args.master)
    result = analyze(rows, master, args.marketplace)
    print_quality_report(result)
    if args.output:
        out = Path(args.output)
        export_workbook(result, str(out.parent), out.name)
    else:
        export_workbook(result, args.output_dir, output_filename(Path(args.file).name))
    return 0


async def cmd_pnl(args) -> int:
    from settlement_store import SettlementStore

    async with SettlementStore() as store:
        result = await store.load_result(args.upload_id)
    if result is None:
        logger.error(f"No analysis result for upload {args.upload_id}. Run 'analyze' first.")
        return 1
    report = monthly_report(result["summary_tables"].get("order_summary", []))
    print(json.dumps(report, indent=2, default=str))
    return 0


async def cmd_results(args) -> int:
    from settlement_store import SettlementStore
    from settlement_views import list_results

    async with SettlementStore() as store:
        results = await store.list_results(args.marketplace)
    for item in list_results(results):
        print(f"{item['upload_id']}  {item['marketplace']:<9} {item['rows_count']:>6} orders  "
              f"{item['filename'] or '-'}  ({item['created_at']})")
    if not results:
        print("No stored results.")
    return 0


async def cmd_uploads(args) -> int:
    from settlement_store import SettlementStore

    async with SettlementStore() as store:
        uploads = await store.list_uploads(args.marketplace)
    for upload in uploads:
        print(f"{upload['id']}  {upload['marketplace']:<9} {upload['row_count']:>6} rows  "
              f"{upload['original_name']}  ({upload['created_at']})")
    if not uploads:
        print("No stored uploads.")
    return 0


async def cmd_delete(args) -> int:
    from settlement_store import SettlementStore

    async with SettlementStore() as store:
        upload = await store.delete_upload(args.upload_id)
    print(f"🗑️  Deleted {upload['original_name']} ({upload['marketplace']}) with its rows and result")
    return 0


COMMANDS = {
    "upload": cmd_upload,
    "uploads": cmd_uploads,
    "delete": cmd_delete,
    "master": cmd_master,
    "analyze": cmd_analyze,
    "analyze-file": cmd_analyze_file,
    "pnl": cmd_pnl,
    "results": cmd_results,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Settlement P&L reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Store the cost master, then a settlement file
  python settlement_reports.py master master.xlsx --marketplace amazon
  python settlement_reports.py upload settlement_2024_01.txt --marketplace amazon
  python settlement_reports.py uploads --marketplace amazon

  # Reconcile an upload, store the result and export the workbook
  python settlement_reports.py analyze <upload-id>

  # Remove an upload so the same file can be uploaded again
  python settlement_reports.py delete <upload-id>

  # Offline run, no database
  python settlement_reports.py analyze-file settlement.xlsx --master master.xlsx
        """,
    )
    parser.add_argument("--log-file", default=LOG_FILE, help=f"Log file (default: {LOG_FILE})")
    parser.add_argument("--verbose", action="store_true", help="Log debug messages")
    sub = parser.add_subparsers(dest="command", required=True)

    marketplaces = sorted(MARKETPLACE_ALIASES)

    p = sub.add_parser("upload", help="Store a settlement file")
    p.add_argument("file")
    p.add_argument("--marketplace", choices=marketplaces, default=DEFAULT_MARKETPLACE)
    p.add_argument("--batch-size", type=int, default=500, help="Rows per insert (default: 500)")

    p = sub.add_parser("uploads", help="List stored uploads")
    p.add_argument("--marketplace", choices=marketplaces)

    p = sub.add_parser("delete", help="Delete an upload with its rows and analysis result")
    p.add_argument("upload_id", metavar="upload-id")

    p = sub.add_parser("master", help="Replace the cost master snapshot")
    p.add_argument("file")
    p.add_argument("--marketplace", choices=marketplaces, default=DEFAULT_MARKETPLACE)
    p.add_argument("--batch-size", type=int, default=500, help="Rows per insert (default: 500)")

    p = sub.add_parser("analyze", help="Reconcile stored uploads")
    p.add_argument("upload_ids", nargs="+", metavar="upload-id")
    p.add_argument("--output-dir", default=OUTPUT_DIR, help=f"Workbook directory (default: {OUTPUT_DIR})")
    p.add_argument("--no-export", action="store_true", help="Store the result without writing a workbook")
    p.add_argument("--batch-size", type=int, default=500)

    p = sub.add_parser("analyze-file", help="Reconcile local files without a database")
    p.add_argument("file")
    p.add_argument("--master", required=True, help="Cost master spreadsheet")
    p.add_argument("--marketplace", choices=marketplaces, default=DEFAULT_MARKETPLACE)
    p.add_argument("--output", help="Workbook path (default: <output-dir>/<file>_analyzed.xlsx)")
    p.add_argument("--output-dir", default=OUTPUT_DIR)

    p = sub.add_parser("pnl", help="Print the monthly P&L of an analyzed upload as JSON")
    p.add_argument("upload_id", metavar="upload-id")

    p = sub.add_parser("results", help="List stored analysis results")
    p.add_argument("--marketplace", choices=marketplaces)

    return parser


async def main(argv: List[str] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        return await COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\n⏸️  Process interrupted by user.")
        return 130
    except SettlementError as e:
        logger.error(str(e))
        print(f"❌ {e}")
        return 1
    except Exception as e:
        logger.error(f"Critical error: {e}", exc_info=True)
        print(f"❌ Error: {e}")
        return 1


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
