"""Admission / policy layer (env/ConfigMap driven).

This package is intentionally lightweight so operators can control:
- per-caller and global request ceilings
- tool argument caps and result size ceilings
- follow-up retry and stream watchdog timings
"""
