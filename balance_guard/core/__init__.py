"""
Core modules for balance_guard.

This package contains the detection pipeline (scanner, classifier,
aggregator), the iterative reconciler, the reports and range purge built on
top of it, and the price cache.
"""
