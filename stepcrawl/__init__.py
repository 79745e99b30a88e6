"""
stepcrawl

A resumable website crawler that runs as a sequence of step-budgeted
executions over a durable Redis frontier.
"""

__version__ = "1.0.0"
__description__ = "Step-budgeted, resumable website crawler storing pages as markdown"
