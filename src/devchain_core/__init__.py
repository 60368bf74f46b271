"""Devchain core: storage layer for projects, epics, prompts, agents and documents."""
