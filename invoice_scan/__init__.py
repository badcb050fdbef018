"""Invoice scan: resumable mailbox ingestion of invoices and receipts.

Public API re-exported here for convenience::

    from invoice_scan import DeepScanRunner, ScanStore, Settings
"""

from .config import Settings
from .deep_scan import DeepScanRunner
from .enrichment import AnthropicEnrichmentClient, DisabledEnrichmentClient, build_enrichment_client
from .errors import ScanError
from .logging import setup_logging
from .mailbox import GmailClient, GmailClientFactory, MailboxClient
from .retry import with_retry
from .service import DeepScanService
from .store import ScanStore
from .sync import IncrementalSync

__all__ = [
    "AnthropicEnrichmentClient",
    "DeepScanRunner",
    "DeepScanService",
    "DisabledEnrichmentClient",
    "GmailClient",
    "GmailClientFactory",
    "IncrementalSync",
    "MailboxClient",
    "ScanError",
    "ScanStore",
    "Settings",
    "build_enrichment_client",
    "setup_logging",
    "with_retry",
]
