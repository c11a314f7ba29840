"""
Tiris Backend
API Gateway Services

Use-case services behind the HTTP routes.
"""
