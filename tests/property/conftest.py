"""Hypothesis configuration for property-based testing.

This module configures hypothesis profiles for different environments.
Select one with the HYPOTHESIS_PROFILE environment variable.
"""

import os

from hypothesis import HealthCheck, settings

# Store-backed properties open a fresh SQLite file per example
settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    print_blob=True,
)

settings.register_profile(
    "dev",
    max_examples=30,  # Quick feedback during development
    deadline=None,
    print_blob=True,
)

settings.register_profile(
    "debug",
    max_examples=10,
    deadline=None,
    print_blob=True,
    verbosity=2,
)

settings.register_profile(
    "thorough",
    max_examples=1000,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    print_blob=True,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))
