"""
Person registry application package.
"""
