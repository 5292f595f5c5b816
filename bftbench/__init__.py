"""
Benchmark orchestration for BFT consensus deployments.

This package deploys a committee of validators on a local docker compose stack
or on remote hosts over SSH, drives a fixed transaction load against it, scrapes
latency metrics, and searches for the load at which the committee stops keeping
up.
"""

from .benchmark import (
    BenchmarkParameters,
    BenchmarkParametersGenerator,
    BenchmarkResult,
    FixedLoad,
    NetworkType,
    SearchLoad,
)
from .measurement import Measurement, MeasurementsCollection
from .runner import BenchmarkRunner

__all__ = [
    "BenchmarkParameters",
    "BenchmarkParametersGenerator",
    "BenchmarkResult",
    "BenchmarkRunner",
    "FixedLoad",
    "Measurement",
    "MeasurementsCollection",
    "NetworkType",
    "SearchLoad",
]
