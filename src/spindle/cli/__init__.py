"""
Spindle CLI — validate, order, run and template workflow documents.

Usage::

    spindle workflow validate pipeline.yaml
    spindle workflow run pipeline.yaml --param region=eu
    spindle template extract pipeline.yaml --name "Nightly ETL" -o etl.json
"""

from spindle.cli.app import app

__all__ = ["app"]
