"""Transactional email delivery.

Durable queue, provider selection, quotas, circuit breakers and health
monitoring for sending through several email providers at once.
"""
