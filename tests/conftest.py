import matplotlib

matplotlib.use("Agg")

import pytest

from config_functions import ChaosMapConfig


@pytest.fixture
def default_config():
    return ChaosMapConfig()


@pytest.fixture
def quick_config():
    """Short cutoff so that whole-grid scans stay fast."""
    return ChaosMapConfig(max_time=0.05)
