from __future__ import annotations

import threading
import traceback
from typing import Optional

from PySide6.QtCore import QObject, Signal

from .loader import CallgrindLoader, Cancelled, TraceImportError
from .model import Part, ProfileData
from .settings import LoaderSettings


# -------------------------- Background Worker --------------------------

class ImportWorker(QObject):
    """
    Imports one part; meant to be moved to a QThread with `run` connected to
    the thread's `started` signal.
    """
    progress = Signal(str, int)
    finished = Signal(object)  # Part
    failed = Signal(str, str)  # message, details
    cancelled = Signal()

    def __init__(self, data: ProfileData, part: Part, settings: Optional[LoaderSettings] = None) -> None:
        super().__init__()
        self.data = data
        self.part = part
        self.cancel_flag = threading.Event()
        self.loader = CallgrindLoader(settings)
        self.loader.updateStatus.connect(self.progress.emit)

    def cancel(self) -> None:
        self.cancel_flag.set()

    def run(self) -> None:
        try:
            part = self.loader.load_part(self.data, self.part, cancel=self.cancel_flag)
            self.finished.emit(part)
        except Cancelled:
            self.cancelled.emit()
        except TraceImportError as e:
            self.failed.emit(str(e), "\n".join(str(d) for d in e.diagnostics))
        except Exception as e:
            tb = traceback.format_exc()
            self.failed.emit(f"{type(e).__name__}: {e}", tb)
