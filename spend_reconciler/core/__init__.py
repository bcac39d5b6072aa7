"""
Core modules for Spend Reconciler.

This package contains cost resolution, shared-key deduplication, timeline
and history editing, auto-save, FX conversion and anomaly detection.
"""
