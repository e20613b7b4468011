"""EventCall: GitHub-backed event invitations and RSVPs."""

__version__ = "0.1.0"
