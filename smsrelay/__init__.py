"""Relay SMS messages between gateway phones and the cloud."""
