"""
State Machine Module for Conversation Flows
"""
from app.state_machine.states import FlowType, FLOW_STEPS
from app.state_machine.session_store import SessionStore
from app.state_machine.router import FlowRouter, build_handlers

__all__ = ["FlowType", "FLOW_STEPS", "SessionStore", "FlowRouter", "build_handlers"]
