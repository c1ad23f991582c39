"""
cli.py
~~~~~~

Command line entry point.

Usage:
    digitnet --mnist train     # train on the training CSV, save weights
    digitnet --mnist predict   # load weights, score the test CSV

A 784-200-10 network is used by default: one input per pixel of a 28x28
image, 200 hidden units and one output per digit.
"""

import sys
import argparse
import logging
from datetime import timedelta
from typing import List, Optional

from digitnet.config import Settings, configure_logging
from digitnet.errors import ConfigurationError
from digitnet.mnist_loader import iter_samples
from digitnet.model_persistence import load_weights, save_weights
from digitnet.network import Network, create_network
from digitnet.trainer import evaluate, train_network

logger = logging.getLogger(__name__)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='digitnet',
        description='Train or evaluate a single-hidden-layer MNIST network.'
    )
    parser.add_argument(
        '--mnist', choices=['train', 'predict'],
        help='Either train or predict to evaluate the neural network'
    )
    parser.add_argument('--train-csv', default=settings.train_csv)
    parser.add_argument('--test-csv', default=settings.test_csv)
    parser.add_argument('--weights-dir', default=settings.weights_dir)
    parser.add_argument('--epochs', type=int, default=settings.epochs)
    parser.add_argument('--hidden', type=int, default=settings.hidden_size)
    parser.add_argument(
        '--learning-rate', type=float, default=settings.learning_rate
    )
    parser.add_argument('--seed', type=int, default=settings.seed)
    return parser


def mnist_train(net: Network, args: argparse.Namespace) -> int:
    report = train_network(
        net,
        lambda: iter_samples(args.train_csv, net.input_size, net.output_size),
        epochs=args.epochs
    )
    print(f"\nTime taken to train: {timedelta(seconds=report.elapsed)}")

    if not save_weights(net, args.weights_dir):
        print(f"Could not save weights to {args.weights_dir}", file=sys.stderr)
        return 1
    return 0


def mnist_predict(net: Network, args: argparse.Namespace) -> int:
    if not load_weights(net, args.weights_dir):
        print(
            f"No usable weights in {args.weights_dir}; run --mnist train first",
            file=sys.stderr
        )
        return 1

    report = evaluate(
        net, iter_samples(args.test_csv, net.input_size, net.output_size)
    )
    print(f"Time taken to check: {timedelta(seconds=report.elapsed)}")
    print(f"Tests run: {report.tests}")
    print(f"score: {report.score}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    configure_logging(settings)
    parser = build_parser(settings)
    args = parser.parse_args(argv)

    if args.mnist is None:
        parser.print_help()
        return 0

    try:
        net = create_network(
            settings.input_size,
            args.hidden,
            settings.output_size,
            args.learning_rate,
            rng=args.seed
        )
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        if args.mnist == 'train':
            return mnist_train(net, args)
        return mnist_predict(net, args)
    except ValueError as e:
        logger.error(f"Aborted {args.mnist}: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
