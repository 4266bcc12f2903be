"""
AgentBank

A ledger and transaction engine for autonomous agents: accounts with
interest, certificates of deposit, agent-to-agent transfers, donations,
payment requests and savings goals, with exact Decimal money math and an
append-only transaction history.
"""

__version__ = "1.0.0"
