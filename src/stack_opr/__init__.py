"""Evaluation engine for declarative resource stacks.

Builds a resource graph from validated inputs, orders it, plans changes
against persisted state and reconciles them through a provider.

Package name uses 'stack_opr' (short for operator) to keep it apart from
the stack.py declarations it interprets.
"""
