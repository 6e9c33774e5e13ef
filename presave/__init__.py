"""presave/ -- Signed state tokens for the pre-save authorize hop.

Layer rule: presave/ imports from core/ and the standard library only.
It does NOT import from api/. api/ imports from presave/, not the other way
around.
"""
