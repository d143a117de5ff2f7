"""Database models — re-exports all models.

Import from here:  from quoteflow.models import QuotationRecord, ...
Or from submodules: from quoteflow.models.quotations import QuotationRecord
"""

from .base import Base  # noqa: F401

# Quotations & audit trail
from .quotations import QuotationHistoryRecord, QuotationRecord  # noqa: F401

# Reply deduplication
from .quotations import ProcessedReply  # noqa: F401
