"""API routers for the menugen backend"""
