"""
Spindle - declarative workflow orchestration engine.

Subpackages:
- spindle.core: errors, logging, settings, caching, ids, tagged values
- spindle.execution: retry backoff and timeout watchdogs
- spindle.orchestration: graph model, validator, conditions, state store,
  scheduler and templates
- spindle.cli: the ``spindle`` command line
"""

__version__ = "0.1.0"
