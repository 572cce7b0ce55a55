import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

BYTES_PER_GBYTES = 1024. * 1024. * 1024.


@dataclass
class RunContext:
    """
    Bookkeeping for a single measurement run.

    Holds FFT counters, a minimal estimate of memory held by catalogue and
    line-of-sight arrays, and the non-fatal warnings raised along the way.
    Components receive it explicitly; the orchestrator reports it at the end.
    """
    count_fft: int = 0
    count_ifft: int = 0
    gbytes_mem: float = 0.
    gbytes_max_mem: float = 0.
    warnings: list = field(default_factory=list)
    allocations: dict = field(default_factory=dict)

    def record_fft(self, n=1):
        self.count_fft += n

    def record_ifft(self, n=1):
        self.count_ifft += n

    def allocate(self, label, nbytes):
        if label in self.allocations:
            self.release(label)
        gbytes = nbytes / BYTES_PER_GBYTES
        self.allocations[label] = gbytes
        self.gbytes_mem += gbytes
        self.gbytes_max_mem = max(self.gbytes_max_mem, self.gbytes_mem)

    def release(self, label):
        gbytes = self.allocations.pop(label, 0.)
        self.gbytes_mem -= gbytes

    def warn(self, message):
        logger.warning(message)
        self.warnings.append(message)

    def finalise(self):
        if self.count_fft > 0 or self.count_ifft > 0:
            logger.info(
                "Number of FFTs: %d forward, %d backward.",
                self.count_fft, self.count_ifft
            )
        logger.info(
            "Minimal estimate of peak memory usage: %.3e gigabytes.",
            self.gbytes_max_mem
        )
        if self.allocations:
            self.warn(
                f"Uncleared dynamically allocated memory: "
                f"{self.gbytes_mem:.3e} gigabytes ({', '.join(self.allocations)})."
            )
