"""Pydantic models for the menugen backend"""
