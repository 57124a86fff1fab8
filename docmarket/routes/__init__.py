"""HTTP routers for the document marketplace."""
