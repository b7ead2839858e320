"""
webhooks — provider push ingress.

Verifies signatures and normalizes pushes into ``webhook_event`` jobs; the
job runner does the actual work.
"""
