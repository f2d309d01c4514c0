"""
AI Agent Module

Bounded invocation of the external reasoning agent on behalf of a fund.
The agent decides; the turn, budget and time limits enforced here are the
hard authority over how long and how expensively it may run.
"""
