"""
Newsletter backend - caching, rate limiting and retry for the newsletter API.
"""
