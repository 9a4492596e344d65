"""Identity and session engine.

Issues and rotates bearer credentials, reconciles identities across
password and Google sign-in, and answers "who is this caller" for every
protected request.
"""

__version__ = "0.1.0"
