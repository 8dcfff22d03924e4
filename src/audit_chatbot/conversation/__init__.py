"""
Conversational layer.

This package contains:
- confirmation: restatements, pending plans and the confirmation gate protocol
- orchestrator: main "brain" used by the UI to handle each message
"""
