"""
Settings package: configuration API and schema validation.

This package provides:

- :mod:`ExpenseSync.settings.lib` – Application paths, config.json loading, validation and persistence.
"""
