"""Operator CLI for the Talkah subscription engine."""
