"""Pipeline services for the menugen backend"""
