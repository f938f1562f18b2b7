"""Shopfloor MES - work order execution core"""
