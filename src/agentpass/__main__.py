"""Allow `python -m agentpass` to launch the agent."""

from agentpass.main import run

run()
