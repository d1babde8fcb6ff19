"""auth/ -- Token lifecycle engine for ipbound.

IP matching, credential signing, token/user stores, the session authority,
and the request-time verification gateway.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
