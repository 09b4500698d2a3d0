"""Core modules for the menugen backend"""
