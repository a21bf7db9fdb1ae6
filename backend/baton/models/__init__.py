from baton.models.session import ClassSession
from baton.models.enrollment import Enrollment
from baton.models.chain import Chain
from baton.models.scan_log import ScanLogEntry
from baton.models.snapshot import Snapshot
from baton.models.final_status import FinalStatusRecord

__all__ = ["ClassSession", "Enrollment", "Chain", "ScanLogEntry", "Snapshot", "FinalStatusRecord"]
