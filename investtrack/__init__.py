"""Integration refresh pipeline for the investment tracker."""

__version__ = "1.0.0"
