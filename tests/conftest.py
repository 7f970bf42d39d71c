# mypy: ignore-errors

import jax
import numpy as np
import pytest

from tinyfg import test_utils

jax.config.update("jax_enable_x64", True)


@pytest.fixture
def random():
    return np.random.default_rng(5968)


@pytest.fixture
def graph():
    return test_utils.create_linear_factor_graph()


@pytest.fixture
def zero_delta():
    return test_utils.create_zero_delta()


@pytest.fixture
def correct_delta():
    return test_utils.create_correct_delta()
