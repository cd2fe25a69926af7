"""
Spreadsheet export of a parsed statement.

Sheets: Transactions, Summary (optional) and Monthly Breakdown (optional).
Frames are built as plain pandas objects first so they can be inspected
without touching the filesystem.
"""
from __future__ import annotations
import os
from collections import OrderedDict
from datetime import datetime
from typing import List, Literal, Optional

import pandas as pd
from pydantic import BaseModel

from core.logger import get_logger
from core.utils import format_currency
from llm.extractor import AIStatementExtractor
from models.schema import StatementRecord, Transaction, is_iso_date

log = get_logger("export/excel")

DateFormat = Literal["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"]

_STRFTIME = {
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
}

UNCATEGORIZED = "Uncategorized"


class ExportOptions(BaseModel):
    includeCategories: bool = True
    includeBalance: bool = True
    dateFormat: DateFormat = "MM/DD/YYYY"
    currency: str = "USD"
    groupByMonth: bool = True
    includeSummary: bool = True
    useAICategorization: bool = False


def format_date(value: str, fmt: DateFormat) -> str:
    """Render an ISO date in ``fmt``; non-ISO values are returned unchanged."""
    if not is_iso_date(value):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").strftime(_STRFTIME[fmt])
    except ValueError:
        return value


def _confidence(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else ""


def build_transactions_frame(transactions: List[Transaction], options: ExportOptions) -> pd.DataFrame:
    columns = ["Date", "Description", "Amount", "Type"]
    if options.includeBalance:
        columns.append("Balance")
    if options.includeCategories:
        columns.append("Category")
        if options.useAICategorization:
            columns.append("Confidence")

    rows = []
    for t in transactions:
        row = [
            format_date(t.date, options.dateFormat),
            t.description,
            format_currency(t.amount, options.currency),
            "Credit" if t.type == "credit" else "Debit",
        ]
        if options.includeBalance:
            row.append(format_currency(t.balance, options.currency) if t.balance is not None else "")
        if options.includeCategories:
            row.append(t.category or UNCATEGORIZED)
            if options.useAICategorization:
                row.append(_confidence(t.confidence))
        rows.append(row)

    return pd.DataFrame(rows, columns=columns)


def build_summary_rows(statement: StatementRecord, options: ExportOptions) -> List[List[object]]:
    """Summary sheet content: header block, totals, then the per-category breakdown."""
    cur = options.currency
    rows: List[List[object]] = [
        ["Bank Statement Summary"],
        [""],
        ["Bank Name", statement.bankName],
        ["Account Number", statement.accountNumber],
        ["Statement Period", statement.statementPeriod],
        [""],
        ["Transaction Summary"],
        ["Total Transactions", len(statement.transactions)],
        ["Total Credits", format_currency(statement.total_credits, cur)],
        ["Total Debits", format_currency(statement.total_debits, cur)],
        ["Net Amount", format_currency(statement.net_amount, cur)],
        [""],
        ["Category Breakdown"],
        ["Category", "Credits", "Debits", "Net", "Count"] + (["Avg Confidence"] if options.useAICategorization else []),
    ]

    totals: "OrderedDict[str, dict]" = OrderedDict()
    for t in statement.transactions:
        bucket = totals.setdefault(t.category or UNCATEGORIZED,
                                   {"credits": 0.0, "debits": 0.0, "count": 0, "conf_sum": 0.0, "conf_n": 0})
        bucket["credits" if t.type == "credit" else "debits"] += t.amount
        bucket["count"] += 1
        if t.confidence is not None:
            bucket["conf_sum"] += t.confidence
            bucket["conf_n"] += 1

    for category, b in totals.items():
        row: List[object] = [
            category,
            format_currency(b["credits"], cur),
            format_currency(b["debits"], cur),
            format_currency(b["credits"] - b["debits"], cur),
            b["count"],
        ]
        if options.useAICategorization:
            row.append(f"{b['conf_sum'] / b['conf_n']:.2f}" if b["conf_n"] else "")
        rows.append(row)

    return rows


def build_monthly_frame(transactions: List[Transaction], options: ExportOptions) -> pd.DataFrame:
    """Per-month credits, debits, net and count, oldest month first. Non-ISO dates are left out."""
    columns = ["Month", "Credits", "Debits", "Net", "Transaction Count"]
    dated = [t for t in transactions if is_iso_date(t.date)]
    if len(dated) < len(transactions):
        log.debug(f"Monthly breakdown skipped undated transactions: count={len(transactions) - len(dated)}")
    if not dated:
        return pd.DataFrame([], columns=columns)

    df = pd.DataFrame({
        "month": [t.date[:7] for t in dated],
        "credits": [t.amount if t.type == "credit" else 0.0 for t in dated],
        "debits": [t.amount if t.type == "debit" else 0.0 for t in dated],
    })
    grouped = df.groupby("month", sort=True).agg(
        credits=("credits", "sum"), debits=("debits", "sum"), count=("credits", "size")
    )

    rows = []
    for month, r in grouped.iterrows():
        rows.append([
            datetime.strptime(month + "-01", "%Y-%m-%d").strftime("%B %Y"),
            format_currency(r["credits"], options.currency),
            format_currency(r["debits"], options.currency),
            format_currency(r["credits"] - r["debits"], options.currency),
            int(r["count"]),
        ])
    return pd.DataFrame(rows, columns=columns)


def export_filename(statement: StatementRecord, today: Optional[datetime] = None) -> str:
    bank = "_".join(statement.bankName.split())
    return f"bank_statement_{bank}_{(today or datetime.now()).strftime('%Y-%m-%d')}.xlsx"


def export_to_excel(statement: StatementRecord, options: ExportOptions, output_dir: str,
                    extractor: Optional[AIStatementExtractor] = None) -> str:
    """
    Write the workbook and return its path.

    With ``useAICategorization`` and an extractor, transactions are
    re-categorized (and refined) first; a failed call keeps the original.
    """
    transactions = statement.transactions
    if options.useAICategorization and extractor is not None:
        transactions = extractor.categorize_transactions(transactions, refine=True)
        statement = statement.model_copy(update={"transactions": transactions})

    os.makedirs(output_dir, exist_ok=True)
    output_path = os.path.join(output_dir, export_filename(statement))

    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        workbook = writer.book
        header_fmt = workbook.add_format({"bold": True, "bg_color": "#E3F2FD", "border": 1})

        tx_df = build_transactions_frame(transactions, options)
        tx_df.to_excel(writer, index=False, sheet_name="Transactions")
        ws = writer.sheets["Transactions"]
        widths = [12, 40, 15, 10] + [15 if c == "Balance" else 20 if c == "Category" else 10 for c in tx_df.columns[4:]]
        for idx, (col, width) in enumerate(zip(tx_df.columns, widths)):
            ws.set_column(idx, idx, width)
            ws.write(0, idx, col, header_fmt)
        ws.freeze_panes("A2")

        if options.includeSummary:
            summary = pd.DataFrame(build_summary_rows(statement, options))
            summary.to_excel(writer, index=False, header=False, sheet_name="Summary")
            ws = writer.sheets["Summary"]
            ws.set_column("A:A", 25)
            ws.set_column("B:D", 15)
            ws.set_column("E:F", 12)

        if options.groupByMonth:
            monthly = build_monthly_frame(transactions, options)
            monthly.to_excel(writer, index=False, sheet_name="Monthly Breakdown")
            ws = writer.sheets["Monthly Breakdown"]
            ws.set_column("A:A", 20)
            ws.set_column("B:E", 15)

    log.info(
        f"Exported statement to Excel: path={output_path} transactions={len(transactions)} "
        f"summary={options.includeSummary} monthly={options.groupByMonth}"
    )
    return output_path
