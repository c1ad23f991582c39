"""
config.py
~~~~~~~~~

Runtime settings read from the environment, and logging setup shared by
the command line and the API server.
"""

import os
import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from digitnet.errors import ConfigurationError

T = TypeVar('T')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Third-party loggers that are too chatty in production
NOISY_LOGGERS = [
    'socketio', 'engineio', 'engineio.server', 'socketio.server', 'werkzeug'
]


def _env(name: str, default: T, parse: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return parse(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e


@dataclass
class Settings:
    """Settings for the command line and the API server."""

    log_level: str = 'INFO'
    production: bool = False
    port: int = 8000
    train_csv: str = 'mnist_dataset/mnist_train.csv'
    test_csv: str = 'mnist_dataset/mnist_test.csv'
    weights_dir: str = 'data'
    model_dir: str = 'models'
    input_size: int = 784
    hidden_size: int = 200
    output_size: int = 10
    learning_rate: float = 0.1
    epochs: int = 5
    seed: Optional[int] = None
    cleanup_days: float = 2

    @classmethod
    def from_env(cls) -> 'Settings':
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: if a numeric variable cannot be parsed
        """
        defaults = cls()
        return cls(
            log_level=os.getenv('LOG_LEVEL', defaults.log_level).upper(),
            production=os.getenv('FLASK_ENV') == 'production',
            port=_env('PORT', defaults.port, int),
            train_csv=os.getenv('DIGITNET_TRAIN_CSV', defaults.train_csv),
            test_csv=os.getenv('DIGITNET_TEST_CSV', defaults.test_csv),
            weights_dir=os.getenv('DIGITNET_WEIGHTS_DIR', defaults.weights_dir),
            model_dir=os.getenv('DIGITNET_MODEL_DIR', defaults.model_dir),
            input_size=_env(
                'DIGITNET_INPUT_SIZE', defaults.input_size, int),
            hidden_size=_env(
                'DIGITNET_HIDDEN_SIZE', defaults.hidden_size, int),
            output_size=_env(
                'DIGITNET_OUTPUT_SIZE', defaults.output_size, int),
            learning_rate=_env(
                'DIGITNET_LEARNING_RATE', defaults.learning_rate, float),
            epochs=_env('DIGITNET_EPOCHS', defaults.epochs, int),
            seed=_env('DIGITNET_SEED', defaults.seed, int),
            cleanup_days=_env(
                'DIGITNET_CLEANUP_DAYS', defaults.cleanup_days, float),
        )


def configure_logging(settings: Settings) -> None:
    """
    Set up logging based on environment.

    - In production: silence noisy third-party logs, keep ours at INFO
    - In development: show everything at the configured level
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    if settings.production:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)
