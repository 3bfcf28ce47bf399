"""Aggregation, merge and sync orchestration"""
