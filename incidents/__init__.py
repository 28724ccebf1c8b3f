"""Core (UI-agnostic) school incident dashboard logic.

This package contains:
- data loading (CSV/JSON/XLSX -> pandas) and record normalization
- severity / institution type classifiers
- filter specification + filter engine
- page compute functions (JSON-serializable payloads)
- upstream API client with per-query TTL caching
- chart helpers (Altair -> Vega-Lite spec dict)
"""
