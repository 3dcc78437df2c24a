"""
Moderation collaborator

Receives report requests and stores them as pending Report documents for
human review. Moderation decisions happen elsewhere.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from config import settings
from database import create_document, get_documents
from errors import ConflictError, ValidationError
from schemas import Report, ReportedItemType, ReportReason

logger = logging.getLogger(__name__)


class ReportStore(ABC):
    @abstractmethod
    def exists(self, reporter_id: str, item_type: ReportedItemType, item_id: str) -> bool:
        pass

    @abstractmethod
    def insert(self, report: Report) -> str:
        """Persist report and return its id"""
        pass


class MongoReportStore(ReportStore):
    """Stores reports in the "report" collection"""

    collection_name = "report"

    def exists(self, reporter_id, item_type, item_id):
        found = get_documents(self.collection_name, {
            "reporter_id": reporter_id,
            "reported_item_type": item_type.value,
            "reported_item_id": item_id,
        }, limit=1)
        return bool(found)

    def insert(self, report):
        return create_document(self.collection_name, report)


class InMemoryReportStore(ReportStore):
    def __init__(self):
        self.reports: List[Report] = []
        self._lock = threading.Lock()

    def exists(self, reporter_id, item_type, item_id):
        with self._lock:
            return any(
                r.reporter_id == reporter_id
                and r.reported_item_type == item_type
                and r.reported_item_id == item_id
                for r in self.reports
            )

    def insert(self, report):
        with self._lock:
            self.reports.append(report)
            return str(len(self.reports))


class ModerationService:
    def __init__(self, store: ReportStore):
        self.store = store

    def submit_report(
        self,
        reporter_id: str,
        reported_item_type: ReportedItemType,
        reported_item_id: str,
        reason: ReportReason,
        description: str,
        context: Optional[str] = None
    ) -> str:
        """
        File a pending report

        Raises:
            ValidationError: Description outside the allowed length
            ConflictError: The reporter already reported this item
        """
        description = (description or "").strip()
        if not settings.REPORT_DESCRIPTION_MIN <= len(description) <= settings.REPORT_DESCRIPTION_MAX:
            raise ValidationError(
                f"Description must be {settings.REPORT_DESCRIPTION_MIN}-"
                f"{settings.REPORT_DESCRIPTION_MAX} characters"
            )

        if self.store.exists(reporter_id, reported_item_type, reported_item_id):
            raise ConflictError("You have already reported this item")

        report = Report(
            reporter_id=reporter_id,
            reported_item_type=reported_item_type,
            reported_item_id=reported_item_id,
            reason=reason,
            description=description,
            context=context,
        )
        report_id = self.store.insert(report)
        logger.info(
            f"Report {report_id}: {reporter_id} reported {reported_item_type.value} "
            f"{reported_item_id} for {reason.value}"
        )
        return report_id


def get_report_store() -> ReportStore:
    if settings.SESSION_STORE.lower() == "memory":
        return InMemoryReportStore()
    return MongoReportStore()
