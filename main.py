from __future__ import annotations
import argparse
import os
import sys
from pathlib import Path

# --- Ensure project root is in path ---
ROOT_DIR = Path(__file__).resolve().parent
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

# --- Import core setup ---
from core.config import config
from core.errors import StatementError
from core.logger import configure_logging, get_logger
from core.utils import format_currency, safe_write
from export.excel import ExportOptions, export_to_excel
from llm.client import VertexCompletionClient
from llm.extractor import AIStatementExtractor
from models.schema import UNKNOWN
from pipeline.orchestrator import PipelineResult, StatementPipeline
from templates.catalogue import TemplateCatalogue

log = get_logger("main")


def verify_environment(use_ai: bool) -> bool:
    """Check prerequisites; returns whether the AI path is usable."""
    log.info(f"Starting StatementSync in '{config.environment}' mode")

    if use_ai and not (config.gcp_project_id or os.getenv("GOOGLE_CLOUD_PROJECT")):
        log.warning("GCP_PROJECT_ID not set, running with pattern recognition only")
        return False
    return use_ai


def build_pipeline(use_ai: bool) -> StatementPipeline:
    catalogue = TemplateCatalogue()
    catalogue.load()
    extractor = AIStatementExtractor(VertexCompletionClient()) if use_ai else None
    return StatementPipeline(catalogue, extractor)


def list_templates(pipeline: StatementPipeline) -> None:
    templates = pipeline.catalogue.get_available_templates()
    if not templates:
        print("No templates stored.")
        return
    for t in templates:
        flag = "verified" if t.isVerified else "unverified"
        print(f"{t.id}  {t.bankName:<30} uses={t.usageCount:<4} accuracy={t.avgAccuracy:.2f}  {flag}")


def print_summary(result: PipelineResult) -> None:
    st = result.statement
    cur = st.currency
    print(f"Bank:        {st.bankName}")
    print(f"Account:     {st.accountNumber}")
    print(f"Period:      {st.statementPeriod}")
    print(f"Strategy:    {result.strategy}")
    if result.templateUsed:
        suffix = " (new)" if result.isNewTemplate else ""
        print(f"Template:    {result.templateUsed.id}{suffix}")
    print(f"Transactions: {len(st.transactions)}")
    if st.is_empty:
        print("No transactions found.")
        return
    print(f"Credits:     {format_currency(st.total_credits, cur)}")
    print(f"Debits:      {format_currency(st.total_debits, cur)}")
    print(f"Net:         {format_currency(st.net_amount, cur)}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="StatementSync: bank statement PDF to structured transactions")
    parser.add_argument("statement", nargs="?", help="Path to the statement PDF")
    parser.add_argument("--template", default=None, help="Template id to use instead of automatic matching")
    parser.add_argument("--user", default=None, help="User id recorded on learned templates")
    parser.add_argument("--no-ai", action="store_true", help="Pattern recognition only, no AI calls")
    parser.add_argument("--password", default=None, help="Password for encrypted PDFs")
    parser.add_argument("--xlsx", default=None, metavar="DIR", help="Write an Excel workbook into DIR")
    parser.add_argument("--json", default=None, metavar="PATH", help="Write the statement JSON to PATH")
    parser.add_argument("--list-templates", action="store_true", help="List stored templates and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.verbose:
        configure_logging("DEBUG")
    use_ai = verify_environment(not args.no_ai)
    pipeline = build_pipeline(use_ai)

    if args.list_templates:
        list_templates(pipeline)
        return 0

    if not args.statement:
        log.error("No statement given")
        return 2

    try:
        result = pipeline.process_document(
            args.statement,
            password=args.password,
            selected_template_id=args.template,
            user_id=args.user,
            use_ai=use_ai,
        )
    except StatementError as e:
        log.error(f"Processing failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print_summary(result)

    if args.json:
        safe_write(Path(args.json), result.statement.model_dump_json(indent=2).encode("utf-8"))
        log.info(f"Wrote statement JSON: path={args.json}")

    if args.xlsx:
        options = ExportOptions(currency=result.statement.currency if result.statement.currency != UNKNOWN else "USD")
        path = export_to_excel(result.statement, options, args.xlsx, extractor=pipeline.extractor)
        print(f"Workbook:    {path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
