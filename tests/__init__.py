"""
Concord Test Suite
"""
