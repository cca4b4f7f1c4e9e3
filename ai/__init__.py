"""
AI Advisor Module

Independent LLM advisors vote on tokens and positions; the consensus engine
turns those votes into a single BUY/SELL/HOLD reading with a confidence.

Core principle: advisors only inform decisions. Sizing, risk gates and
exits stay with the deterministic core.
"""
