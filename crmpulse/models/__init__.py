"""Typed records and snapshot values"""
