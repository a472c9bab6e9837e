# Copyright (c) clusterca Contributors. All rights reserved.
# Licensed under the MIT License.
"""Observability for clusterca."""

from .metrics import CaMetrics

__all__ = ["CaMetrics"]
