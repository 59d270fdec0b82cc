"""Reporting utilities for seqnet."""

from .metrics import CsvSink, JsonlSink
from .plots import PlotAdapter
from .progress import EpochReporter

__all__ = ["CsvSink", "EpochReporter", "JsonlSink", "PlotAdapter"]
