#!/usr/bin/env python3
"""
probe_scanner.py
Main module for business logic analysis of captured HTTP requests.
"""
from __future__ import annotations
import logging

from tools.scanner import analyze_raw_request, submit_feedback, get_learning_stats
from tools.store import SQLiteStore

logger = logging.getLogger(__name__)

# Re-export main entry points
__all__ = ['analyze_raw_request', 'submit_feedback', 'get_learning_stats', 'SQLiteStore']
