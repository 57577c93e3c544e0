"""
Main entry point for the huddle signaling relay.
Run with: python -m huddle
"""
from .relay.server import run

if __name__ == "__main__":
    run()
