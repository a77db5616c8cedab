"""A lightweight HTTP server for static files, directory listings, byte ranges and CGI."""

__version__ = "1.21"