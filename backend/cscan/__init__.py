"""C-scan wall-thickness inspection engine.

Parse instrument spreadsheets, merge plates into one grid, compute inspection
statistics and segment corrosion patches.  ``cscan.server:app`` is the HTTP
entry point.
"""

__version__ = "0.1.0"
