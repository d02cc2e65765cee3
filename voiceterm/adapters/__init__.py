"""Adapters package - wire codec and domain events.

Connects the engine to the two outside parties: the browser clients
and the assistant subprocess.
"""
