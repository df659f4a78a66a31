"""
DataLoader service package.
"""
