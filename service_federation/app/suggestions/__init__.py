"""Recipient suggestions merged from the provider directory and local history."""
