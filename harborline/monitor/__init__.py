"""Harborline run summaries — read-only views over the run ledger.

Modules
-------
renderer
    ``RunSummaryRenderer`` turns ``PipelineRun`` projections and target
    records into Rich renderables for terminal display.
"""
