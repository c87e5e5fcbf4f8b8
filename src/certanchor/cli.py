"""certanchor CLI — issue and verify chain-anchored certificates.

Usage:
    python -m certanchor.cli create-template --out conf/template.json
    python -m certanchor.cli check-roster conf/roster.csv
    python -m certanchor.cli instantiate --template conf/template.json --roster conf/roster.csv --out unsigned/
    python -m certanchor.cli issue --template conf/template.json --roster conf/roster.csv --out blockchain/ --wait
    python -m certanchor.cli verify blockchain/*.json
    python -m certanchor.cli generate-key

Exit codes: 0 success, 1 failure, 2 verification indeterminate.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from certanchor.chain.anchor import ConfirmationPoller, ConfirmationState
from certanchor.chain.esplora import EsploraClient
from certanchor.chain.wallet import LocalKeyWallet
from certanchor.config import IssuerConfig
from certanchor.errors import CertAnchorError, IssuanceError
from certanchor.issuance.pipeline import IssuancePipeline, write_certificates
from certanchor.issuance.roster import RosterStore
from certanchor.issuance.template import write_template
from certanchor.logging_config import configure_logging
from certanchor.models.certificate import BlockchainCertificate, Template
from certanchor.models.verification import VerificationStatus
from certanchor.verify.verifier import Verifier


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INDETERMINATE = 2


def _load_config(args: argparse.Namespace) -> IssuerConfig:
    config = IssuerConfig.from_env(env_file=args.env_file)
    configure_logging(args.log_level or config.log_level, json_format=args.log_json)
    return config


def _make_pipeline(config: IssuerConfig) -> IssuancePipeline:
    return IssuancePipeline.from_config(config)


def _make_verifier(config: IssuerConfig) -> Verifier:
    return Verifier.from_config(config)


def _fail(message: str) -> int:
    print(f"Failed: {message}", file=sys.stderr)
    return EXIT_FAILURE


def cmd_create_template(args: argparse.Namespace) -> int:
    config = _load_config(args)
    template = write_template(config, args.out)
    print(f"Wrote template to {args.out} (placeholders: {', '.join(sorted(template.placeholders()))})")
    return EXIT_OK


def cmd_check_roster(args: argparse.Namespace) -> int:
    _load_config(args)
    entries = RosterStore().load_csv(args.roster)
    print(f"Roster OK: {len(entries)} recipient(s)")
    return EXIT_OK


def cmd_instantiate(args: argparse.Namespace) -> int:
    _load_config(args)
    template = Template.from_file(args.template)
    roster = RosterStore().load_csv(args.roster)
    run = IssuancePipeline().prepare_batch(template, roster, epoch=args.epoch)
    paths = write_certificates(args.out, run.certificates)
    print(json.dumps({
        "epoch": run.epoch,
        "merkleRoot": run.commitment.root if run.commitment else None,
        "certificates": [str(p) for p in paths],
    }, indent=2))
    return EXIT_OK


def cmd_issue(args: argparse.Namespace) -> int:
    config = _load_config(args)
    template = Template.from_file(args.template)
    roster = RosterStore().load_csv(args.roster)
    try:
        certificates, anchor = _make_pipeline(config).issue_batch(template, roster, epoch=args.epoch)
    except IssuanceError as exc:
        for index, identity, error in exc.failures:
            print(f"  row {index + 1} ({identity}): {error}", file=sys.stderr)
        if exc.txid:
            state = "may have been" if exc.funds_spent is None else "already"
            print(f"  transaction {state} broadcast: {exc.txid}", file=sys.stderr)
        return _fail(str(exc))

    paths = write_certificates(args.out, certificates)
    summary = anchor.to_dict()
    summary["certificates"] = [str(p) for p in paths]

    if args.wait:
        poller = ConfirmationPoller(
            EsploraClient(config.esplora_url, timeout=config.http_timeout),
            anchor.txid,
            target_confirmations=config.min_confirmations,
            poll_interval=args.poll_interval,
            timeout=args.wait_timeout,
        )
        try:
            state = poller.run()
        except KeyboardInterrupt:
            poller.cancel()
            state = ConfirmationState.CANCELLED
        summary["confirmation"] = state.value

    print(json.dumps(summary, indent=2))
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    config = _load_config(args)
    verifier = _make_verifier(config)
    certificates = []
    for path in args.certificates:
        try:
            certificates.append(BlockchainCertificate.from_file(path))
        except (OSError, ValueError) as exc:
            return _fail(f"{path}: {exc}")

    results = verifier.verify_many(certificates)
    for path, result in zip(args.certificates, results):
        print(json.dumps({"file": str(path), **result.to_dict()}))

    statuses = {r.status for r in results}
    if statuses == {VerificationStatus.VALID}:
        return EXIT_OK
    if VerificationStatus.INVALID in statuses:
        return EXIT_FAILURE
    return EXIT_INDETERMINATE


def cmd_generate_key(args: argparse.Namespace) -> int:
    """Print a fresh issuer key and its P2PKH script; fund the script before issuing."""
    wallet, key_hex = LocalKeyWallet.generate()
    print(json.dumps({
        "privateKey": key_hex,
        "publicKey": wallet.public_key_hex,
        "scriptPubKey": wallet.funding_key,
    }, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certanchor",
        description="certanchor — chain-anchored certificate issuance",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("--log-level", default=None, help="Override CERTANCHOR_LOG_LEVEL")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")
    sub = parser.add_subparsers(dest="command")

    # create-template
    p_tpl = sub.add_parser("create-template", help="Write a certificate template from issuer config")
    p_tpl.add_argument("--out", type=Path, required=True, help="Template output file")

    # check-roster
    p_roster = sub.add_parser("check-roster", help="Validate a roster CSV")
    p_roster.add_argument("roster", type=Path, help="Roster CSV (name,pubkey,identity)")

    # instantiate
    p_inst = sub.add_parser("instantiate", help="Write unsigned certificates; no network access")
    p_inst.add_argument("--template", type=Path, required=True, help="Template JSON")
    p_inst.add_argument("--roster", type=Path, required=True, help="Roster CSV")
    p_inst.add_argument("--out", type=Path, required=True, help="Output directory")
    p_inst.add_argument("--epoch", help="Batch epoch (default: now, UTC)")

    # issue
    p_issue = sub.add_parser("issue", help="Assemble, anchor and write a batch")
    p_issue.add_argument("--template", type=Path, required=True, help="Template JSON")
    p_issue.add_argument("--roster", type=Path, required=True, help="Roster CSV")
    p_issue.add_argument("--out", type=Path, required=True, help="Output directory")
    p_issue.add_argument("--epoch", help="Batch epoch (default: now, UTC)")
    p_issue.add_argument("--wait", action="store_true", help="Wait for confirmation after broadcast")
    p_issue.add_argument("--poll-interval", type=float, default=30.0, help="Seconds between polls (default: 30)")
    p_issue.add_argument("--wait-timeout", type=float, default=3600.0, help="Give up waiting after N seconds (default: 3600)")

    # verify
    p_verify = sub.add_parser("verify", help="Verify certificates against the chain")
    p_verify.add_argument("certificates", type=Path, nargs="+", help="Certificate JSON files")

    # generate-key
    sub.add_parser("generate-key", help="Generate a new issuer key")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    commands = {
        "create-template": cmd_create_template,
        "check-roster": cmd_check_roster,
        "instantiate": cmd_instantiate,
        "issue": cmd_issue,
        "verify": cmd_verify,
        "generate-key": cmd_generate_key,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        return handler(args)
    except (CertAnchorError, OSError) as exc:
        return _fail(str(exc))


if __name__ == "__main__":
    raise SystemExit(main())
