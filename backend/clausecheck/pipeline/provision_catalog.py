"""Provision catalog: single source of truth for the provisions we check.

Each provision defines:
  - provision_id / priority: identity & verification tier
  - canonical_wording / synonyms / search_queries: text embedded at startup
    and used as vector-retrieval queries during pre-screening
  - exact_patterns: literal substrings for the keyword sweep (falls back to
    synonyms + canonical wording when absent)
  - definition / false_positive_traps / confidence_rubric: injected into the
    verification prompt for the agent
  - cluster_id: related provisions are kept in the same batch
  - suggested_action: surfaced to the user when the provision is present

The catalog is static operator-supplied data. Set PROVISION_CATALOG_PATH to a
JSON file (list of objects with the keys above) to replace the built-in one.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from clausecheck.config import PRIORITIES, PROVISION_CATALOG_PATH
from clausecheck.pipeline.models import Provision

logger = logging.getLogger(__name__)

# ───────────────────────────────────────────────────────
# Built-in catalog: crane / rigging subcontracts
# ───────────────────────────────────────────────────────

CRITICAL_PROVISIONS: list[dict[str, Any]] = [
    {
        "provision_id": "additional-insured",
        "priority": "critical",
        "cluster_id": "insurance-coverage",
        "canonical_wording": (
            "Subcontractor shall name Contractor as additional insured on all liability policies"
        ),
        "synonyms": [
            "additional insured",
            "named as insured",
            "contractor added to policy",
            "include contractor on insurance",
        ],
        "search_queries": [
            "contractor must be added as an additional insured on the subcontractor's policies",
        ],
        "definition": (
            "Requirement that the general contractor be added as an additional insured "
            "on the subcontractor insurance policies"
        ),
        "false_positive_traps": [
            "Certificate holder only (not additional insured)",
            "Optional or conditional language",
            "Only for specific policies (must be all liability policies)",
        ],
        "confidence_rubric": {
            "explicit": 'Contains phrase "additional insured" with clear requirement for contractor',
            "strong_paraphrase": "Clear requirement to add/name contractor to insurance policies",
            "weak": "Mentions insurance but additional insured status is unclear or conditional",
        },
        "suggested_action": "Confirm the additional insured endorsement (CG 20 10 / CG 20 37) is on file.",
    },
    {
        "provision_id": "primary-non-contributory",
        "priority": "critical",
        "cluster_id": "insurance-coverage",
        "canonical_wording": "Subcontractor's insurance shall be primary and non-contributory",
        "synonyms": [
            "primary and non-contributory",
            "primary coverage",
            "not contribute to",
            "insurance is primary",
        ],
        "exact_patterns": ["non-contributory", "noncontributory", "primary and non"],
        "definition": "Requirement that subcontractor insurance pays first before contractor insurance",
        "false_positive_traps": [
            'Only mentions "primary" without "non-contributory"',
            "Applies only to specific policy types",
            "Conditional language",
        ],
        "confidence_rubric": {
            "explicit": 'Contains both "primary" and "non-contributory" together',
            "strong_paraphrase": "Clear statement that subcontractor insurance pays first",
            "weak": "Mentions primary coverage but non-contributory status unclear",
        },
        "suggested_action": "Verify the primary/non-contributory endorsement with the broker.",
    },
    {
        "provision_id": "waiver-of-subrogation",
        "priority": "critical",
        "cluster_id": "insurance-coverage",
        "canonical_wording": "Subcontractor waives all rights of subrogation against Contractor",
        "synonyms": [
            "waiver of subrogation",
            "waive subrogation rights",
            "waive right of recovery",
            "no subrogation",
        ],
        "definition": "Prevents insurer from suing contractor to recover claim payments",
        "false_positive_traps": [
            "Only waives for specific incidents",
            "Conditional waiver",
            "Mentions subrogation without clear waiver",
        ],
        "confidence_rubric": {
            "explicit": 'Explicit "waiver of subrogation" language',
            "strong_paraphrase": (
                "Clear statement that subcontractor/insurer cannot pursue contractor for recovery"
            ),
            "weak": "Mentions subrogation but waiver is conditional or unclear",
        },
        "suggested_action": "Request a waiver of subrogation endorsement on GL, auto and workers comp.",
    },
]

HIGH_PROVISIONS: list[dict[str, Any]] = [
    {
        "provision_id": "liquidated-damages",
        "priority": "high",
        "canonical_wording": "Liquidated damages for delay",
        "synonyms": [
            "liquidated damages",
            "delay damages",
            "per diem damages",
            "daily damages for delay",
        ],
        "definition": "Predetermined amount charged for each day of delay in completion",
        "false_positive_traps": [
            "Actual damages (not liquidated)",
            "General damages clause",
            "No specific amount or rate",
        ],
        "confidence_rubric": {
            "explicit": 'Contains "liquidated damages" with amount/rate per day of delay',
            "strong_paraphrase": "Specific daily/weekly amount for delays",
            "weak": "Mentions damages for delay but amount/rate unclear",
        },
        "suggested_action": "Price the daily rate into the schedule risk and negotiate a cap.",
    },
    {
        "provision_id": "indemnity-clause",
        "priority": "high",
        "cluster_id": "risk-transfer",
        "canonical_wording": "Subcontractor shall indemnify and hold harmless Contractor",
        "synonyms": [
            "indemnify",
            "hold harmless",
            "defend and indemnify",
            "indemnification",
        ],
        "definition": "Obligation to compensate contractor for losses/claims",
        "false_positive_traps": [
            "Mutual indemnity (both parties)",
            "Limited to specific circumstances only",
            "Comparative negligence language that limits scope",
        ],
        "confidence_rubric": {
            "explicit": 'Clear indemnity obligation with "indemnify" and "hold harmless"',
            "strong_paraphrase": "Clear obligation to protect contractor from claims/losses",
            "weak": "Indemnity mentioned but scope unclear or heavily limited",
        },
        "suggested_action": "Check the state anti-indemnity statute before accepting broad form indemnity.",
    },
    {
        "provision_id": "flow-down-clause",
        "priority": "high",
        "cluster_id": "risk-transfer",
        "canonical_wording": (
            "The terms of the prime contract between Owner and Contractor are incorporated "
            "by reference and binding on Subcontractor"
        ),
        "synonyms": [
            "incorporated by reference",
            "made part of this agreement",
            "flow down",
            "bound to contractor as contractor is bound to owner",
        ],
        "definition": (
            "Pass-through of the prime contract obligations to the subcontractor. "
            "Requires explicit incorporation language"
        ),
        "false_positive_traps": [
            "Prime contract merely referenced or listed as an exhibit",
            "Incorporation limited to scope of work or specifications only",
        ],
        "confidence_rubric": {
            "explicit": "Explicit incorporation by reference of the prime contract terms",
            "strong_paraphrase": "Subcontractor assumes toward Contractor the obligations Contractor owes Owner",
            "weak": "Prime contract referenced without clear incorporation",
        },
        "suggested_action": "Obtain and review the prime contract before signing.",
    },
]

MEDIUM_PROVISIONS: list[dict[str, Any]] = [
    {
        "provision_id": "notice-of-claim",
        "priority": "medium",
        "canonical_wording": "Subcontractor must provide immediate notice of any claims or incidents",
        "synonyms": [
            "notice of claim",
            "immediate notification",
            "report incidents",
            "prompt notice",
        ],
        "definition": "Requirement to notify contractor of claims/incidents quickly",
        "false_positive_traps": [
            "General notice requirements (not claim-specific)",
            "No timeframe specified",
            "Notice to insurance company only",
        ],
        "confidence_rubric": {
            "explicit": "Specific claim/incident notice requirement with timeframe (immediate, 24hrs, etc)",
            "strong_paraphrase": "Clear obligation to notify contractor of claims quickly",
            "weak": "General notice provisions without claim focus",
        },
    },
    {
        "provision_id": "ocip-ccip-enrollment",
        "priority": "medium",
        "cluster_id": "insurance-coverage",
        "canonical_wording": (
            "Subcontractor shall enroll in the owner or contractor controlled insurance program"
        ),
        "synonyms": [
            "OCIP",
            "CCIP",
            "wrap-up insurance",
            "controlled insurance program",
        ],
        "exact_patterns": ["ocip", "ccip", "wrap-up", "wrap up", "controlled insurance program"],
        "definition": "Participation in a project-wide wrap-up insurance program",
        "false_positive_traps": [
            "Program mentioned as optional or to be determined",
            "Enrollment excluded for off-site crane work",
        ],
        "confidence_rubric": {
            "explicit": "Mandatory enrollment in a named OCIP/CCIP",
            "strong_paraphrase": "Subcontractor covered under a project wrap-up program",
            "weak": "Wrap-up program referenced without enrollment obligation",
        },
    },
]

LOW_PROVISIONS: list[dict[str, Any]] = [
    {
        "provision_id": "certificate-of-insurance",
        "priority": "low",
        "canonical_wording": "Subcontractor shall provide certificates of insurance before work begins",
        "synonyms": [
            "certificate of insurance",
            "COI",
            "proof of insurance",
            "insurance certificates",
        ],
        "exact_patterns": ["certificate of insurance", "certificates of insurance", "proof of insurance"],
        "definition": "Requirement to provide insurance documentation",
        "false_positive_traps": [
            "Mentions insurance without certificate requirement",
            "No timing specified",
            "Optional language",
        ],
        "confidence_rubric": {
            "explicit": "Explicit requirement for certificate of insurance with timing",
            "strong_paraphrase": "Clear requirement to provide insurance documentation before work",
            "weak": "Mentions insurance documentation but requirement unclear",
        },
    },
    {
        "provision_id": "consequential-damages-waiver",
        "priority": "low",
        "canonical_wording": "The parties mutually waive claims for consequential damages",
        "synonyms": [
            "consequential damages",
            "lost profits",
            "indirect damages",
            "mutual waiver",
        ],
        "definition": "Mutual waiver of indirect losses such as lost profits or loss of use",
        "false_positive_traps": [
            "One-sided waiver in favour of Contractor only",
            "Waiver carved out for liquidated damages without saying so",
        ],
        "confidence_rubric": {
            "explicit": "Mutual waiver of consequential damages stated expressly",
            "strong_paraphrase": "Neither party liable for lost profits or indirect loss",
            "weak": "Consequential damages mentioned without a clear mutual waiver",
        },
    },
]

BUILTIN_CATALOG: list[dict[str, Any]] = (
    CRITICAL_PROVISIONS + HIGH_PROVISIONS + MEDIUM_PROVISIONS + LOW_PROVISIONS
)


# ───────────────────────────────────────────────────────
# Loading & validation
# ───────────────────────────────────────────────────────

def validate_catalog(provisions: list[Provision]) -> None:
    """Raise ValueError if the catalog is unusable.

    Checks unique ids, known priorities and non-empty canonical wording.
    """
    seen: set[str] = set()
    for p in provisions:
        if not p.provision_id:
            raise ValueError("Provision with empty provision_id")
        if p.provision_id in seen:
            raise ValueError(f"Duplicate provision_id: {p.provision_id}")
        seen.add(p.provision_id)
        if p.priority not in PRIORITIES:
            raise ValueError(f"Provision {p.provision_id}: unknown priority '{p.priority}'")
        if not p.canonical_wording.strip():
            raise ValueError(f"Provision {p.provision_id}: canonical_wording is empty")


def parse_catalog(entries: list[dict[str, Any]]) -> list[Provision]:
    provisions = [Provision.from_dict(e) for e in entries]
    validate_catalog(provisions)
    return provisions


def load_catalog(path: str | Path) -> list[Provision]:
    """Load an operator-supplied catalog from a JSON file."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("provisions", [])
    provisions = parse_catalog(raw)
    logger.info(f"Loaded {len(provisions)} provisions from {path}")
    return provisions


_catalog: list[Provision] | None = None


def get_provision_catalog() -> list[Provision]:
    """Return the active catalog (loaded once per process)."""
    global _catalog
    if _catalog is None:
        if PROVISION_CATALOG_PATH:
            _catalog = load_catalog(PROVISION_CATALOG_PATH)
        else:
            _catalog = parse_catalog(BUILTIN_CATALOG)
    return _catalog


def get_provision(provision_id: str) -> Provision | None:
    for p in get_provision_catalog():
        if p.provision_id == provision_id:
            return p
    return None
