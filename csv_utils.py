import csv
import re
from io import StringIO
from typing import Sequence

from balance import BalanceSummary, summarize
from models import Movement, MovementType

EXPORT_HEADER = ["Date", "User", "Email", "Type", "Amount", "Description", "CreatedAt"]
TYPE_LABELS = {MovementType.INCOME: "Income", MovementType.EXPENSE: "Expense"}


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def format_amount(cents: int) -> str:
    return f"{cents / 100:.2f}"


def format_timestamp(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


def summary_rows(totals: BalanceSummary) -> list[list[str]]:
    pad = [""] * (EXPORT_HEADER.index("Amount") - 1)
    return [
        [],
        ["SUMMARY"],
        ["Total Income", *pad, format_amount(totals.total_income_cents)],
        ["Total Expense", *pad, format_amount(totals.total_expense_cents)],
        ["Final Balance", *pad, format_amount(totals.current_balance_cents)],
    ]


def export_movements(movements: Sequence[Movement]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for movement in movements:
        writer.writerow(
            [
                format_timestamp(movement.date),
                sanitize_csv_value(movement.user.name if movement.user else ""),
                sanitize_csv_value(movement.user.email if movement.user else ""),
                TYPE_LABELS[movement.type],
                format_amount(movement.amount_cents),
                sanitize_csv_value(movement.description),
                format_timestamp(movement.created_at),
            ]
        )
    writer.writerows(summary_rows(summarize(movements)))
    return output.getvalue()
