"""
agentpass — pass-execution and history-governance engine for autonomous
coding agents.
"""

__version__ = "1.0.0"
