"""
trainer.py
~~~~~~~~~~

Epoch loop and evaluation around a :class:`~digitnet.network.Network`.

Training is plain per-sample gradient descent: every sample of every
epoch gets one ``Network.train`` call, in dataset order.
"""

import time
import logging
from typing import Any, Callable, Dict, Iterable, NamedTuple, Optional, Union

from digitnet.mnist_loader import Sample
from digitnet.network import Network, predicted_class

logger = logging.getLogger(__name__)

SampleSource = Union[Iterable[Sample], Callable[[], Iterable[Sample]]]


class TrainingReport(NamedTuple):
    epochs: int
    samples: int
    elapsed: float


class EvaluationReport(NamedTuple):
    score: int
    tests: int
    elapsed: float

    @property
    def accuracy(self) -> float:
        """Fraction of correct predictions (0.0 for an empty test set)."""
        return self.score / self.tests if self.tests else 0.0


def _epoch_samples(samples: SampleSource) -> Iterable[Sample]:
    # A callable is re-invoked each epoch so file-backed data is re-read
    return samples() if callable(samples) else samples


def train_network(
    net: Network,
    samples: SampleSource,
    epochs: int = 5,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    yield_func: Optional[Callable[[], None]] = None,
    yield_every: int = 100
) -> TrainingReport:
    """
    Train ``net`` for a fixed number of passes over ``samples``.

    Args:
        net: Network to train in place
        samples: Re-iterable of Sample, or a callable returning a fresh
            iterable for each epoch
        epochs: Number of full passes
        callback: Called after each epoch with ``epoch``,
            ``total_epochs``, ``samples`` and ``elapsed_time``
        yield_func: Called every ``yield_every`` samples so cooperative
            schedulers (gevent) can serve other work
        yield_every: Samples between ``yield_func`` calls

    Returns:
        TrainingReport: epochs run, samples seen per epoch, seconds taken

    Raises:
        ValueError: if ``epochs`` is not a positive integer
    """
    if isinstance(epochs, bool) or not isinstance(epochs, int) or epochs < 1:
        raise ValueError(f"epochs must be a positive integer, got {epochs!r}")

    start = time.perf_counter()
    seen = 0

    for epoch in range(1, epochs + 1):
        seen = 0
        for sample in _epoch_samples(samples):
            net.train(sample.inputs, sample.targets)
            seen += 1
            if yield_func is not None and seen % yield_every == 0:
                yield_func()

        elapsed = time.perf_counter() - start
        logger.info(
            f"Epoch {epoch}/{epochs}: {seen} samples, {elapsed:.2f}s elapsed"
        )
        if callback is not None:
            callback({
                'epoch': epoch,
                'total_epochs': epochs,
                'samples': seen,
                'elapsed_time': elapsed
            })

    return TrainingReport(epochs, seen, time.perf_counter() - start)


def evaluate(net: Network, samples: Iterable[Sample]) -> EvaluationReport:
    """
    Count how many samples ``net`` classifies correctly.

    The predicted class of a sample is the index of the largest output.
    """
    start = time.perf_counter()
    score = 0
    tests = 0

    for sample in samples:
        if predicted_class(net.predict(sample.inputs)) == sample.label:
            score += 1
        tests += 1

    report = EvaluationReport(score, tests, time.perf_counter() - start)
    logger.info(
        f"Evaluated {tests} samples: {score} correct "
        f"({report.accuracy:.2%})"
    )
    return report
