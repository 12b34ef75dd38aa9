from .automations import run_automation_rule_job, run_scheduled_rule_job

__all__ = [
    "run_automation_rule_job",
    "run_scheduled_rule_job",
]
"""Background job modules for RQ workers and schedulers."""
