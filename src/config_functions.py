##############################################################
## Section 0: The required packages
##############################################################

import logging
import math
import numbers
import sys
from dataclasses import dataclass, fields, replace
from typing import Callable, List, Mapping, Optional

logger = logging.getLogger(__name__)

##############################################################
## Section 1.1: Errors
##############################################################

class InvalidConfigurationError(ValueError):
    """
    Raised when a configuration, surface size or sampling stride is rejected.
    Nothing is clamped: the caller has to fix the value.
    """

##############################################################
## Section 1.2: The configuration snapshot
##############################################################

# keys of the flat host-side mapping -> dataclass field names
MAPPING_KEYS = {
    "g": "g",
    "m1": "m1",
    "m2": "m2",
    "l1": "l1",
    "l2": "l2",
    "dt": "dt",
    "maxTime": "max_time",
    "max_time": "max_time",
    "chunkSize": "batch_size",
    "batch_size": "batch_size",
}

def check_positive_int(name, value):
    """
    Accept Python and numpy integers (anything registered as numbers.Integral)
    that are positive. Booleans are rejected.
    """
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value <= 0:
        raise InvalidConfigurationError(f"{name} must be a positive integer, got {value!r}")

def fields_from_keys(mapping):
    '''
    Translate host keys (maxTime, chunkSize, ...) to field names. Unknown keys
    and a field set through two of its names are rejected.
    '''
    kwargs = {}
    for key, value in mapping.items():
        if key not in MAPPING_KEYS:
            raise InvalidConfigurationError(f"unknown configuration key {key!r}")
        name = MAPPING_KEYS[key]
        if name in kwargs:
            raise InvalidConfigurationError(f"{name} is set more than once (via {key!r})")
        kwargs[name] = value
    return kwargs

@dataclass(frozen=True)
class PhysicalParameters:
    """Gravity, bob masses and arm lengths of the double pendulum."""

    g: float = 9.81
    m1: float = 1.0
    m2: float = 1.0
    l1: float = 1.0
    l2: float = 1.0

    def as_tuple(self):
        return self.g, self.m1, self.m2, self.l1, self.l2


@dataclass(frozen=True)
class ChaosMapConfig:
    '''
    Immutable snapshot of everything a scan reads: the physical parameters,
    the integration step dt, the cutoff max_time (which doubles as the
    "did not flip" sentinel) and the number of samples per batch.

    Instances are validated on construction, so holding one means holding
    a usable configuration.
    '''

    g: float = 9.81
    m1: float = 1.0
    m2: float = 1.0
    l1: float = 1.0
    l2: float = 1.0
    dt: float = 0.01
    max_time: float = 15.0
    batch_size: int = 1000

    def __post_init__(self):
        for name in ("g", "m1", "m2", "l1", "l2", "dt", "max_time"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise InvalidConfigurationError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value) or value <= 0:
                raise InvalidConfigurationError(f"{name} must be positive and finite, got {value!r}")

        check_positive_int("batch_size", self.batch_size)

    @property
    def params(self) -> PhysicalParameters:
        return PhysicalParameters(g=self.g, m1=self.m1, m2=self.m2, l1=self.l1, l2=self.l2)

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> "ChaosMapConfig":
        """
        Build a snapshot from the flat host mapping (g, m1, m2, l1, l2, dt,
        maxTime, chunkSize). Missing keys keep their defaults.
        """
        return cls(**fields_from_keys(mapping))

    def to_mapping(self) -> dict:
        return {
            "g": self.g,
            "m1": self.m1,
            "m2": self.m2,
            "l1": self.l1,
            "l2": self.l2,
            "dt": self.dt,
            "maxTime": self.max_time,
            "chunkSize": self.batch_size,
        }

    def replace(self, **changes) -> "ChaosMapConfig":
        names = {f.name for f in fields(self)}
        for key in changes:
            if key not in names:
                raise InvalidConfigurationError(f"unknown configuration key {key!r}")
        return replace(self, **changes)

##############################################################
## Section 1.3: The versioned configuration store
##############################################################

class ConfigStore:
    '''
    Process-wide holder of the current configuration snapshot.

    Hosts change parameters through apply(); the store validates the whole
    new snapshot before swapping it in, bumps the version only when the value
    actually changed and then notifies every subscriber with the new snapshot.
    Scans never read the store mid-batch, they are handed snapshots.
    '''

    def __init__(self, config: Optional[ChaosMapConfig] = None):
        self._config = config if config is not None else ChaosMapConfig()
        self._version = 0
        self._subscribers: List[Callable[[ChaosMapConfig], None]] = []

    @property
    def config(self) -> ChaosMapConfig:
        return self._config

    @property
    def version(self) -> int:
        return self._version

    def subscribe(self, callback: Callable[[ChaosMapConfig], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[ChaosMapConfig], None]) -> None:
        self._subscribers.remove(callback)

    def apply(self, **changes) -> ChaosMapConfig:
        """
        Validate and apply keyword changes (field names or host keys such as
        maxTime). Raises InvalidConfigurationError and leaves the store as it
        was if the result is invalid.
        """
        new_config = self._config.replace(**fields_from_keys(changes))
        if new_config == self._config:
            return self._config

        self._config = new_config
        self._version += 1
        logger.info("Configuration v%d applied: %s", self._version, new_config.to_mapping())

        for callback in list(self._subscribers):
            callback(new_config)
        return new_config

##############################################################
## Section 1.4: Logging
##############################################################

LOGGER_NAMES = ("config_functions", "pendulum_functions", "colour_functions", "scan_functions")

def setup_logging(level=logging.INFO, log_file=None):
    '''
    Configure console (and optionally file) logging for the chaos-map modules.
    Calling it again replaces the handlers instead of stacking them.
    '''
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    # the modules are top-level, so each one gets the same handlers
    for name in LOGGER_NAMES:
        module_logger = logging.getLogger(name)
        module_logger.setLevel(level)
        for old_handler in module_logger.handlers:
            old_handler.close()
        module_logger.handlers.clear()
        for handler in handlers:
            module_logger.addHandler(handler)

    logger.info("Logging initialized.")
