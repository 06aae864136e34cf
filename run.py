#!/usr/bin/env python3
"""Worktree session monitor - Run the application.

Usage:
    python run.py
    # Or: python -m worktree_sessions.app

The API will be available at http://localhost:5050/api
"""

from worktree_sessions.app import main

if __name__ == "__main__":
    main()
