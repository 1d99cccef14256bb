"""Validators plugged into the proof lifecycle.

Each validator knows one automatic validation type:
- which activities it serves (validation_type),
- how to turn the raw user input into a canonical reference (resolve),
- which proof column holds that reference (reference_field),
- how to check the reference (validate),
- which proof columns to store once checked (evidence).

The lifecycle owns everything else (pre-flight, uniqueness, persistence,
rewards, progress), so both auto flows share the same state machine.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from chain_client import (
    ERR_CONNECTIVITY,
    ERR_INVALID_API_KEY,
    ERR_PENDING,
    ERR_PROVIDER,
    ERR_RATE_LIMITED,
    ChainDataClient,
    ExplorerError,
)
from models_passports import VALIDATION_AUTO_REFERRAL, VALIDATION_AUTO_TRANSACTION
from models_proofs import PROOF_TYPE_REFERRAL, PROOF_TYPE_TRANSACTION
from onchain_rules import evaluate
from referral_validator import ReferralLinkValidator, normalize_referral_url
from tx_reference import extract_transaction_hash

logger = logging.getLogger(__name__)

# Explorer failures that say nothing about the transaction itself.
UPSTREAM_ERRORS = {ERR_CONNECTIVITY, ERR_INVALID_API_KEY, ERR_RATE_LIMITED, ERR_PROVIDER}
RETRYABLE_ERRORS = UPSTREAM_ERRORS | {ERR_PENDING}

OUTCOME_UPSTREAM = "upstream"


@dataclass
class ValidationOutcome:
    is_valid: bool
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    code: Optional[str] = None
    # the same reference may be submitted again (pending tx, provider outage)
    retryable: bool = False


class ProofValidator:
    validation_type: str = ""
    proof_type: str = ""
    reference_field: str = ""
    noun: str = "reference"
    resolve_error: str = "Could not extract a valid reference."

    def resolve(self, raw: str) -> Optional[str]:
        raise NotImplementedError

    def validate(self, reference: str, activity) -> ValidationOutcome:
        raise NotImplementedError

    def evidence(self, raw: str, reference: str, outcome: ValidationOutcome) -> Dict[str, Any]:
        return {self.reference_field: reference}

    def response_extra(self, proof) -> Dict[str, Any]:
        return {}


class TransactionProofValidator(ProofValidator):
    validation_type = VALIDATION_AUTO_TRANSACTION
    proof_type = PROOF_TYPE_TRANSACTION
    reference_field = "transaction_hash"
    noun = "transaction"
    resolve_error = "Could not extract a valid transaction hash from the link."

    def __init__(self, client: Optional[ChainDataClient] = None):
        self.client = client or ChainDataClient()

    def resolve(self, raw: str) -> Optional[str]:
        return extract_transaction_hash(raw)

    def _explorer_failure(self, e: ExplorerError) -> ValidationOutcome:
        return ValidationOutcome(
            False,
            e.message,
            details={"explorer_error": e.code},
            code=OUTCOME_UPSTREAM if e.code in UPSTREAM_ERRORS else e.code,
            retryable=e.code in RETRYABLE_ERRORS,
        )

    def validate(self, reference: str, activity) -> ValidationOutcome:
        try:
            tx = self.client.get_transaction(reference)
        except ExplorerError as e:
            logger.info("Transaction %s not accepted by explorer: %s (%s)", reference, e.message, e.code)
            return self._explorer_failure(e)

        details = {"transaction": tx.to_dict(), "chain_id": self.client.chain_id}
        if not activity.on_chain_validation_type:
            return ValidationOutcome(True, details=details)

        try:
            receipt = self.client.get_transaction_receipt(reference)
        except ExplorerError as e:
            logger.info("Receipt for %s not available: %s (%s)", reference, e.message, e.code)
            return self._explorer_failure(e)

        result = evaluate(receipt.logs, activity.on_chain_validation_type, activity.validation_config or {})
        details["rule"] = result.to_dict()
        if not result.is_valid:
            return ValidationOutcome(False, result.error, details=details, code="rule_failed")
        return ValidationOutcome(True, details=details)

    def evidence(self, raw: str, reference: str, outcome: ValidationOutcome) -> Dict[str, Any]:
        return {"transaction_hash": reference, "transaction_url": (raw or "").strip() or None}


class ReferralProofValidator(ProofValidator):
    validation_type = VALIDATION_AUTO_REFERRAL
    proof_type = PROOF_TYPE_REFERRAL
    reference_field = "referral_url"
    noun = "referral link"
    resolve_error = "Invalid URL. Please provide a valid referral link."

    def __init__(self, link_validator: Optional[ReferralLinkValidator] = None):
        self.link_validator = link_validator or ReferralLinkValidator()

    def resolve(self, raw: str) -> Optional[str]:
        return normalize_referral_url(raw)

    def validate(self, reference: str, activity) -> ValidationOutcome:
        result = self.link_validator.validate(reference)
        if not result.is_valid:
            return ValidationOutcome(False, result.error, retryable=result.retryable)
        return ValidationOutcome(True, details={"ref_code": result.ref_code})

    def evidence(self, raw: str, reference: str, outcome: ValidationOutcome) -> Dict[str, Any]:
        return {"referral_url": reference, "referral_code": outcome.details.get("ref_code")}

    def response_extra(self, proof) -> Dict[str, Any]:
        return {"refCode": proof.referral_code}
