"""Error conditions shared by the ledger, the activity stream and the content endpoints.

Each error knows the HTTP status it surfaces as; main.py turns them into the
``{"error": ...}`` envelope. TransientWriteFailure never reaches a client: the
award and activity operations log it and report the write as not applied.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional


class SynqError(Exception):
	status_code = 500

	def __init__(self, message: str) -> None:
		super().__init__(message)
		self.message = message

	def to_payload(self) -> Dict[str, Any]:
		return {"error": self.message}


class Unauthenticated(SynqError):
	status_code = 401

	def __init__(self, message: str = "Please sign in", *, redirect: str = "/auth") -> None:
		super().__init__(message)
		self.redirect = redirect

	def to_payload(self) -> Dict[str, Any]:
		return {"error": self.message, "redirect": self.redirect}


class NotConfigured(SynqError):
	status_code = 500


class UpstreamFailure(SynqError):
	status_code = 500

	def __init__(self, message: str, *, upstream_status: Optional[int] = None) -> None:
		super().__init__(message)
		self.upstream_status = upstream_status


class ValidationFailure(SynqError):
	status_code = 400

	def __init__(self, message: str, *, details: Optional[List[Dict[str, str]]] = None) -> None:
		super().__init__(message)
		self.details = details or []

	def to_payload(self) -> Dict[str, Any]:
		return {"error": self.message, "details": self.details}


class TransientWriteFailure(SynqError):
	status_code = 503
