"""
SLA Monitoring Module
=====================

Bounded Context for Service Level Agreement tracking of CRM work items.

Responsibilities:
- Hold the SLA rule set and resolve the rule for each work item
- Compute response and resolution deadlines in business time
- Evaluate work items as on track, at risk or breached
- Fire escalation levels and send notices through Slack
- Provide rule admin, work item and dashboard APIs
"""

__version__ = "1.0.0"
