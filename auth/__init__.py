"""auth/ -- Bearer token verification and FastAPI auth dependencies for ProdReport.

Users authenticate against the external identity provider; this package only
verifies the tokens it issues.

Layer rule: auth/ imports only stdlib + third-party libraries and core/.
It does NOT import from api/, audit/, cache/, or security/.
api/ imports from auth/, not the other way around.
"""
