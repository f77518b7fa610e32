"""
Shared Infrastructure
======================

Cross-cutting technical concerns:
- Structured JSON logging with correlation IDs
- Grafana OTLP export of evaluation pass metrics
"""
