from backupledger.vms.logs import VmLogSink, vm_log_entry_to_dict
from backupledger.vms.service import VmResultNotFoundError, VmResultTracker, vm_result_snapshot_to_dict
from backupledger.vms.types import VmLogEntry, VmResultSnapshot

__all__ = [
    "VmLogEntry",
    "VmLogSink",
    "VmResultNotFoundError",
    "VmResultSnapshot",
    "VmResultTracker",
    "vm_log_entry_to_dict",
    "vm_result_snapshot_to_dict",
]
