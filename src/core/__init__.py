"""
Core business logic for coach messaging.

This module is framework-agnostic - it doesn't import FastAPI, Snowflake,
Twilio or any infrastructure concerns. Persistence and the messaging
provider are reached through protocols, so the dispatch logic can be tested
with in-memory fakes.
"""
