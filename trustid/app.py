import argparse
import json
from dataclasses import replace
from typing import Optional, Sequence

from . import __version__
from .config import Settings
from .domain import ActorRef, Evidence
from .env import load_env
from .errors import TrustIdError
from .risk import RiskSignals
from .service import IdentityEngine


def _operator(args: argparse.Namespace) -> ActorRef:
    return ActorRef.operator(args.operator)


def cmd_resolve(engine: IdentityEngine, args: argparse.Namespace):
    evidence = Evidence(
        document_hash=args.document_hash,
        device_fingerprint=args.device_fingerprint,
        face_embedding_id=args.face_embedding_id,
    )
    return engine.resolve(evidence, actor_ref=args.actor_ref, assess=args.assess)


def cmd_status(engine: IdentityEngine, args: argparse.Namespace):
    return engine.get_status(args.id)


def cmd_breakdown(engine: IdentityEngine, args: argparse.Namespace):
    return engine.get_risk_breakdown(args.id)


def cmd_set_status(engine: IdentityEngine, args: argparse.Namespace):
    return engine.update_status(args.id, args.status, _operator(args))


def cmd_override_risk(engine: IdentityEngine, args: argparse.Namespace):
    return engine.update_risk_override(args.id, args.score, _operator(args))


def cmd_assess(engine: IdentityEngine, args: argparse.Namespace):
    signals = RiskSignals(
        verification_confidence=args.verification_confidence,
        identity_reuse_count=args.identity_reuse_count,
        device_reuse_count=args.device_reuse_count,
        incident_count=args.incident_count,
    )
    return engine.assess_risk(args.id, signals, _operator(args))


def cmd_history(engine: IdentityEngine, args: argparse.Namespace):
    return engine.get_history(args.id)


def cmd_high_risk(engine: IdentityEngine, args: argparse.Namespace):
    return engine.list_high_risk(args.threshold)


def cmd_search(engine: IdentityEngine, args: argparse.Namespace):
    return engine.search({
        "status": args.status,
        "trustTier": args.trust_tier,
        "minScore": args.min_score,
        "maxScore": args.max_score,
        "id": args.id,
        "limit": args.limit,
    })


def cmd_stats(engine: IdentityEngine, args: argparse.Namespace):
    return engine.stats()


def cmd_authorize(engine: IdentityEngine, args: argparse.Namespace):
    return engine.authorize(args.id, args.requires_verification)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trustid", description="Identity resolution and risk scoring")
    parser.add_argument("--version", action="store_true", help="Show version")
    parser.add_argument("--database-url", help="SQLAlchemy URL (default: TRUSTID_DATABASE_URL or sqlite:///data/trustid.db)")

    subparsers = parser.add_subparsers(dest="command")

    res = subparsers.add_parser("resolve", help="Resolve evidence to a canonical identity")
    res.add_argument("--document-hash", help="Document hash fingerprint")
    res.add_argument("--device-fingerprint", help="Device fingerprint")
    res.add_argument("--face-embedding-id", help="Face embedding reference")
    res.add_argument("--actor-ref", help="External actor reference to link")
    res.add_argument("--assess", action="store_true", help="Score the identity right after resolving")
    res.set_defaults(func=cmd_resolve)

    st = subparsers.add_parser("status", help="Show an identity's status, score and masked evidence")
    st.add_argument("id", help="Identity id (CID-YYYYMMDD-XXXXXX)")
    st.set_defaults(func=cmd_status)

    brk = subparsers.add_parser("breakdown", help="Show the stored score next to a fresh calculation")
    brk.add_argument("id", help="Identity id")
    brk.set_defaults(func=cmd_breakdown)

    sst = subparsers.add_parser("set-status", help="Change an identity's verification status")
    sst.add_argument("id", help="Identity id")
    sst.add_argument("status", help="pending, verified, rejected, flagged, suspended or under_review")
    sst.add_argument("--operator", required=True, help="Operator performing the change")
    sst.set_defaults(func=cmd_set_status)

    ovr = subparsers.add_parser("override-risk", help="Manually set a risk score (0-100)")
    ovr.add_argument("id", help="Identity id")
    ovr.add_argument("score", type=int, help="Risk score 0-100")
    ovr.add_argument("--operator", required=True, help="Operator performing the override")
    ovr.set_defaults(func=cmd_override_risk)

    asm = subparsers.add_parser("assess", help="Score an identity and persist the result")
    asm.add_argument("id", help="Identity id")
    asm.add_argument("--verification-confidence", type=float, help="0-1 (or a percentage); default from status")
    asm.add_argument("--identity-reuse-count", type=int, help="Default: linked actor count")
    asm.add_argument("--device-reuse-count", type=int, help="Default: observed device count")
    asm.add_argument("--incident-count", type=int, help="Default: flag count")
    asm.add_argument("--operator", required=True, help="Operator requesting the assessment")
    asm.set_defaults(func=cmd_assess)

    his = subparsers.add_parser("history", help="Print an identity's audit history, oldest first")
    his.add_argument("id", help="Identity id")
    his.set_defaults(func=cmd_history)

    hr = subparsers.add_parser("high-risk", help="List identities at or above a risk threshold")
    hr.add_argument("--threshold", type=int, help="Default: TRUSTID_HIGH_RISK_THRESHOLD or 70")
    hr.set_defaults(func=cmd_high_risk)

    sea = subparsers.add_parser("search", help="Search identities, newest first")
    sea.add_argument("--status", help="Verification status")
    sea.add_argument("--trust-tier", help="Trust tier")
    sea.add_argument("--min-score", type=int, help="Minimum risk score")
    sea.add_argument("--max-score", type=int, help="Maximum risk score")
    sea.add_argument("--id", help="Exact identity id")
    sea.add_argument("--limit", type=int, help="Maximum results (default 100, max 1000)")
    sea.set_defaults(func=cmd_search)

    sts = subparsers.add_parser("stats", help="Identity counts by status and high risk")
    sts.set_defaults(func=cmd_stats)

    auth = subparsers.add_parser("authorize", help="Evaluate the policy gate for an identity")
    auth.add_argument("id", help="Identity id")
    auth.add_argument("--requires-verification", action="store_true", help="Policy requires a verified identity")
    auth.set_defaults(func=cmd_authorize)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    # Load .env if present (TRUSTID_DATABASE_URL, TRUSTID_LOG_LEVEL, etc.)
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    engine = None
    try:
        settings = Settings.from_env()
        if args.database_url:
            settings = replace(settings, database_url=args.database_url)
        engine = IdentityEngine(settings)
        result = args.func(engine, args)
    except TrustIdError as e:
        print(json.dumps({"error": e.code, "message": e.message}))
        raise SystemExit(2)
    finally:
        if engine is not None:
            engine.close()

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
