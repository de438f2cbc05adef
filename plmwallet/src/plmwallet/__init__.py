"""
Palladium chat wallet: chain backends, message transactions and the session service.
"""
