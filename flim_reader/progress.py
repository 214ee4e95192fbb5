"""Progress reporting and cooperative cancellation of the decoding passes."""

import numpy as np
from numba_progress import ProgressBar

# records decoded between two progress updates / cancel checks
PROGRESS_STRIDE = 65536


class CancelToken:
    """Flag that a running pass polls every PROGRESS_STRIDE records.

    The kernels release the GIL, so `cancel()` can be called from another
    thread while a file is being decoded.
    """

    def __init__(self):
        self.flag = np.zeros(1, dtype=np.bool_)

    def cancel(self):
        self.flag[0] = True

    @property
    def cancelled(self):
        return bool(self.flag[0])


def cancel_flag(cancel):
    """The flag array of `cancel`, or a flag that is never raised."""
    if cancel is None:
        return np.zeros(1, dtype=np.bool_)
    return cancel.flag


def progress_bar(total, desc, enabled=True):
    return ProgressBar(total=total, desc=desc, disable=not enabled)
