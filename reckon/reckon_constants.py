import datetime
import locale
import logging
import platform
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, getcontext, localcontext
from fractions import Fraction
from typing import Any, Dict, Optional, Tuple

from reckon.reckon_numeric import compute_e, compute_phi, compute_pi

logger = logging.getLogger("reckon.constants")
logger.addHandler(logging.NullHandler())

VERSION = "1.0.0"


@dataclass(frozen=True)
class ConstantsSnapshot:
    """One published set of high-precision constants."""
    precision: int
    rational: bool
    pi: Decimal
    e: Decimal
    phi: Decimal
    pi_over_180: Decimal


def compute_snapshot(precision: int, rational: bool) -> ConstantsSnapshot:
    digits = precision + 1
    pi = compute_pi(digits)
    with localcontext() as ctx:
        ctx.prec = digits
        pi_over_180 = compute_pi(digits + 3) / 180
    return ConstantsSnapshot(
        precision=precision,
        rational=rational,
        pi=pi,
        e=compute_e(digits),
        phi=compute_phi(digits),
        pi_over_180=pi_over_180,
    )


class PiWorker:
    """Background recomputation of pi, e and pi/180.

    Readers call `snapshot()` and never block; they may see the previous
    snapshot while a recomputation is running. The first snapshot is
    computed synchronously so there is always a valid one.
    """

    def __init__(self, precision: int, rational: bool = False):
        self._snapshot = compute_snapshot(precision, rational)
        self._lock = threading.Lock()
        self._requested: Optional[Tuple[int, bool]] = None
        self._thread: Optional[threading.Thread] = None

    def snapshot(self) -> ConstantsSnapshot:
        return self._snapshot

    def recompute(self, precision: int, rational: bool):
        current = self._snapshot
        with self._lock:
            if self._thread is None and (current.precision, current.rational) == (precision, rational):
                return
            self._requested = (precision, rational)
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name="reckon-constants", daemon=True)
                self._thread.start()

    def _run(self):
        while True:
            with self._lock:
                request = self._requested
                self._requested = None
                if request is None:
                    self._thread = None
                    return
            started = time.perf_counter()
            snap = compute_snapshot(*request)
            # Attribute assignment publishes the whole snapshot at once.
            self._snapshot = snap
            logger.debug("Recomputed constants at %d digits in %.3fs", request[0], time.perf_counter() - started)

    def wait(self, timeout: Optional[float] = None):
        """Block until pending recomputations finish (tests and shutdown only)."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)


# ===================================================================
# Predefined values
# ===================================================================


def _at_precision(value: Decimal, rational: bool) -> Any:
    rounded = +value
    return Fraction(rounded) if rational else rounded


def constant_getters(session) -> Dict[str, Any]:
    """Getters for the system-backed numeric constants of a session."""

    def pi():
        return _at_precision(session.constants.snapshot().pi, session.settings.rational)

    def e():
        return _at_precision(session.constants.snapshot().e, session.settings.rational)

    def phi():
        return _at_precision(session.constants.snapshot().phi, session.settings.rational)

    def big_phi():
        return _at_precision(1 / session.constants.snapshot().phi, session.settings.rational)

    return {
        'pi': pi, 'π': pi,
        'e': e,
        'phi': phi, 'φ': phi,
        'PHI': big_phi,
    }


def today() -> int:
    """Days since the epoch in local time."""
    return (datetime.date.today() - datetime.date(1970, 1, 1)).days


def now() -> int:
    """Nanoseconds since local midnight."""
    current = datetime.datetime.now()
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    delta = current - midnight
    return (delta.days * 86400 + delta.seconds) * 1_000_000_000 + delta.microseconds * 1000


def info(session) -> Dict[str, Any]:
    return {
        'version': VERSION,
        'python': platform.python_version(),
        'os': {'name': platform.system(), 'version': platform.release(), 'arch': platform.machine()},
        'locale': locale.getlocale()[0] or "",
        'timezone': time.strftime("%Z"),
        'precision': getcontext().prec,
        'rational': session.settings.rational,
    }
