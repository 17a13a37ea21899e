"""
Research Relay: routes research requests between LLM providers and tracks long-running research jobs.
"""
__version__ = "0.1.0"
