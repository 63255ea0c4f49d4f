import numpy as np

from .config import Kernel
from .signals import RANGE, INTENSITY

LOAM_KERNEL = np.array([1, 1, 1, 1, 1, -10, 1, 1, 1, 1, 1], dtype=float)

LOG_KERNEL = np.array([
    0.000232391821040, 0.001842097682135, 0.034270489647107, 0.166944943945706,
    0.009954755288609, -0.427088356766115, 0.009954755288609, 0.166944943945706,
    0.034270489647107, 0.001842097682135, 0.000232391821040,
])

FOG_KERNEL = np.array([
    0.001633760088379, 0.032377155612650, 0.177827803362499, 0.242248209744676, 0.0,
    -0.242248209744676, -0.177827803362499, -0.032377155612650, -0.001633760088379,
])

KERNEL_SIGNAL = {
    Kernel.LOAM: RANGE,
    Kernel.LOG: INTENSITY,
    Kernel.FOG: INTENSITY,
    Kernel.RNG_VAR: RANGE,
    Kernel.INT_VAR: INTENSITY,
}

VARIANCE_KERNELS = (Kernel.RNG_VAR, Kernel.INT_VAR)


def kernel_width(kernel, variance_window):
    if kernel == Kernel.LOAM:
        return len(LOAM_KERNEL)
    if kernel == Kernel.LOG:
        return len(LOG_KERNEL)
    if kernel == Kernel.FOG:
        return len(FOG_KERNEL)
    return variance_window


def kernel_offset(kernel, variance_window):
    """Scores are shifted from their input samples by (width - 1) / 2."""
    return (kernel_width(kernel, variance_window) - 1) // 2


def windowed_sum(signal, width):
    return np.correlate(signal, np.ones(width), mode='valid')


def sample_variance(signal, width):
    """
    Sliding sample variance using the computational formula
    (sum(x^2) - sum(x)^2 / N) / (N - 1).
    """
    s1 = windowed_sum(signal, width)
    s2 = windowed_sum(signal * signal, width)
    return (s2 - s1 * s1 / width) / (width - 1)


def compute_score(signal, kernel, variance_window):
    """
    Score of one ring signal for one kernel. Returns None when the ring has
    no more samples than the kernel is wide.

    Args:
        signal (np.ndarray): (N,) range or intensity samples of one ring.
        kernel (Kernel): which kernel to apply.
        variance_window (int): width of the variance kernels.

    Returns:
        np.ndarray or None: (N - width + 1,) scores, element i belonging to
        sample i + kernel_offset(kernel).
    """
    width = kernel_width(kernel, variance_window)
    if len(signal) <= width:
        return None
    if kernel in VARIANCE_KERNELS:
        return sample_variance(signal, width)
    if kernel == Kernel.LOAM:
        taps = LOAM_KERNEL
    elif kernel == Kernel.LOG:
        taps = LOG_KERNEL
    else:
        taps = FOG_KERNEL
    return np.correlate(signal, taps, mode='valid')


def compute_scores(buffer, variance_window):
    """
    All kernel scores for every ring of a SignalBuffer.
    Returns: dict {Kernel: [scores of ring 0, scores of ring 1, ...]}
    """
    signals = {
        kind: [buffer.signal(kind, r) for r in range(buffer.n_ring)]
        for kind in (RANGE, INTENSITY)
    }
    return {
        kernel: [compute_score(signals[KERNEL_SIGNAL[kernel]][r], kernel, variance_window)
                 for r in range(buffer.n_ring)]
        for kernel in Kernel
    }
