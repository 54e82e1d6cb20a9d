"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- snowflake: Relational persistence
- twilio: SMS delivery

These wrappers translate between external formats and our domain models.
"""
