"""
OpenLedger — offline privacy-compliance pipeline.

Scans a source tree for personal-data usage, scores the evidence against
privacy frameworks, renders a policy, and tracks drift between runs.
"""

__version__ = "0.1.0"
