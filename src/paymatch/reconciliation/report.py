"""Report generation for reconciliation read models."""

import json
import csv
import io
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .models import BulkResolutionReport, ExceptionRow, ReconciliationSummary

EXCEPTION_COLUMNS = [
    "exception_id", "transaction_id", "transaction_status", "source", "reference",
    "amount", "payer_name", "paid_at", "student_id", "payment_reference",
    "expected_amount", "confidence", "reasons", "assignee",
]


class ReportGenerator:
    """Generator for reconciliation reports in various formats."""

    def __init__(
        self,
        summary: Optional[ReconciliationSummary] = None,
        exceptions: Optional[List[ExceptionRow]] = None,
        bulk: Optional[BulkResolutionReport] = None,
    ):
        """Initialize the report generator.

        Args:
            summary: Status counts to report.
            exceptions: Review queue rows to report.
            bulk: Bulk resolution outcome to report.
        """
        self.summary = summary
        self.exceptions = exceptions or []
        self.bulk = bulk

    def to_dict(self):
        data = {}
        if self.summary is not None:
            data["summary"] = self.summary.to_dict()
        if self.exceptions:
            data["exceptions"] = [row.model_dump(mode="json") for row in self.exceptions]
        if self.bulk is not None:
            data["bulk"] = self.bulk.to_dict()
        return data

    def to_json(self, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        # Custom serializer for datetime and enum values
        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, Enum):
                return obj.value
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(self.to_dict(), indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """Generate CSV with one row per queue entry, or per bulk item when no rows are given.

        Returns:
            CSV string, empty when there is nothing to list.
        """
        output = io.StringIO()
        writer = csv.writer(output)

        if self.exceptions:
            writer.writerow(EXCEPTION_COLUMNS)
            for row in self.exceptions:
                writer.writerow([
                    row.exception_id,
                    row.transaction_id,
                    row.transaction_status.value,
                    row.source,
                    row.reference,
                    row.amount,
                    row.payer_name,
                    row.paid_at.isoformat(),
                    row.student_id,
                    row.payment_reference,
                    row.expected_amount,
                    f"{row.confidence:.2f}",
                    ";".join(reason.value for reason in row.reasons),
                    row.assignee or "",
                ])
        elif self.bulk is not None:
            writer.writerow(["transaction_id", "outcome", "status", "error"])
            for item in self.bulk.items:
                writer.writerow([
                    item.transaction_id,
                    item.outcome.value,
                    item.status.value if item.status else "",
                    item.error or "",
                ])
        elif self.summary is not None:
            counts = self.summary.to_dict()
            writer.writerow(["status", "count"])
            for key in (
                "ingested", "approved", "needs_review", "unmatched",
                "duplicate", "rejected", "needs_student_confirmation", "total",
            ):
                writer.writerow([key, counts[key]])

        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary.

        Returns:
            Formatted text summary of the available read models.
        """
        lines = [
            "=" * 60,
            "RECONCILIATION SUMMARY",
            "=" * 60,
        ]

        if self.summary is not None:
            summary = self.summary.to_dict()
            lines.extend([
                f"Generated At: {summary['generated_at']}",
                "",
                "Transactions:",
                f"  Total: {summary['total']}",
                f"  Ingested: {summary['ingested']}",
                f"  Approved: {summary['approved']}",
                f"  Needs Review: {summary['needs_review']}",
                f"  Unmatched: {summary['unmatched']}",
                f"  Duplicate: {summary['duplicate']}",
                f"  Rejected: {summary['rejected']}",
                f"  Needs Student Confirmation: {summary['needs_student_confirmation']}",
                f"  Approval Rate: {summary['approval_rate']}",
            ])

        if self.exceptions:
            lines.extend(["", f"Open Queue Items: {len(self.exceptions)}"])

        if self.bulk is not None:
            lines.extend([
                "",
                f"Bulk {self.bulk.action.value} by {self.bulk.actor}:",
                f"  Applied: {self.bulk.applied}",
                f"  No-op: {self.bulk.noop}",
                f"  Conflict: {self.bulk.conflicts}",
                f"  Not Found: {self.bulk.not_found}",
                f"  Error: {self.bulk.errors}",
            ])
            if self.bulk.truncated:
                lines.append("  (batch was capped)")

        lines.append("=" * 60)

        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Generate a detailed human-readable text report.

        Returns:
            Formatted text with summary and all queue rows.
        """
        lines = [self.to_summary_text(), ""]

        if self.exceptions:
            lines.extend([
                "REVIEW QUEUE",
                "-" * 40,
            ])
            for row in self.exceptions:
                reasons = ", ".join(reason.value for reason in row.reasons) or "none"
                lines.extend([
                    f"\nTransaction: {row.transaction_id} ({row.transaction_status.value})",
                    f"  Reference: {row.reference or '-'} | Amount: {row.amount} | Payer: {row.payer_name}",
                    f"  Candidate: {row.student_id} / {row.payment_reference} "
                    f"(expects {row.expected_amount})",
                    f"  Confidence: {row.confidence:.2f}",
                    f"  Reasons: {reasons}",
                    f"  Assignee: {row.assignee or 'unassigned'}",
                ])
            lines.append("")

        if self.bulk is not None and self.bulk.items:
            lines.extend([
                "BULK RESOLUTION",
                "-" * 40,
            ])
            for item in self.bulk.items:
                detail = f" - {item.error}" if item.error else ""
                lines.append(f"  {item.transaction_id}: {item.outcome.value}{detail}")
            lines.append("")

        return "\n".join(lines)
