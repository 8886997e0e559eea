# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Command-line orchestration for obtaining and installing certificates.

Usage:
    certpilot [options]

Default behavior (no options):
    - Shows list of all configured certificates with expiration status
    - Renews certificates that expire within 30 days (or --days threshold)
    - Renews certificates whose stored SANs differ from the config
    - Installs renewed certificates on configured F5 targets
    - Shows summary of actions taken

Options:
    --list: Only show certificate list, do not renew
    --deploy: Only install existing certificates, do not renew
    --sweep: Only remove challenge records left behind by an earlier run
    --zone FQDN [--tenant T]: Print the hosted zone that serves FQDN
    --staging: Use Let's Encrypt staging environment
    --force: Force renewal regardless of expiration
    --days N: Renew if expires within N days (default: 30)
"""
from typing import Dict, List
import argparse
import logging
import sys

from .acme_client import AcmeClient
from .cert_store import CertificateStore
from .config import Settings, load_settings
from .credentials import YamlSecretProvider, load_yaml
from .dns_provider import make_record_manager
from .errors import CertPilotError, ConfigError
from .installer import F5Installer
from .ledger import ChallengeLedger
from .manager import CertificateManager
from .models import RequestStatus

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="certpilot",
                                     description="Issue Let's Encrypt certificates with DNS-01 and install them")
    parser.add_argument('--config', default='config.yaml')
    parser.add_argument('--credentials', default='credentials.yaml')
    parser.add_argument('--account-key', help='Override acme.account_key from the config')
    parser.add_argument('--days', type=int, default=30, help='Renew if cert expires within DAYS')
    parser.add_argument('--force', action='store_true')
    parser.add_argument('--staging', action='store_true', help='Use Let\'s Encrypt staging directory (safe for testing)')
    parser.add_argument('--dry-run', action='store_true', help='Do not perform network calls; print planned actions')
    parser.add_argument('--verbose', action='store_true')
    parser.add_argument('--deploy', action='store_true',
                        help='Install existing local certificates on F5 targets without requesting new certificates')
    parser.add_argument('--list', action='store_true',
                        help='List local certificates with their domains and expiration dates')
    parser.add_argument('--sweep', action='store_true',
                        help='Delete challenge TXT records orphaned by an interrupted run')
    parser.add_argument('--zone', metavar='FQDN', help='Print the hosted zone for FQDN and exit')
    parser.add_argument('--tenant', default='default', help='Tenant whose DNS credentials --zone uses')
    return parser


def print_list(settings: Settings, store: CertificateStore, days: int) -> None:
    print(f"{'Certificate':<30} {'Expires In':<15} {'Status':<15} {'Domains'}")
    print("-" * 120)
    for entry in settings.certificates:
        name = entry.domain
        if not store.exists(name):
            print(f"{name:<30} {'NOT FOUND':<15} {'Missing':<15} {name}")
            continue
        try:
            remaining = store.days_until_expiry(name)
            domains_str = ', '.join(sorted(store.certificate_domains(name)))
        except (CertPilotError, ValueError) as e:
            print(f"{name:<30} {'ERROR':<15} {str(e)[:20]:<15} {name}")
            continue
        if remaining < 0:
            status = "EXPIRED"
        elif remaining <= days:
            status = "RENEW SOON"
        else:
            status = "Valid"
        print(f"{name:<30} {remaining:>3} days        {status:<15} {domains_str}")
    print()


def print_summary(summary: Dict[str, List[str]]) -> None:
    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)

    if summary['renewed']:
        print(f"Renewed certificates: {', '.join(summary['renewed'])}")
    if summary['reordered']:
        print(f"Reordered certificates (domain changes): {', '.join(summary['reordered'])}")
    if summary['deployed']:
        print(f"Installed certificates: {', '.join(sorted(set(summary['deployed'])))}")
    if summary['errors']:
        print(f"Errors encountered: {len(summary['errors'])}")
        for err in summary['errors']:
            print(f"  - {err}")

    if not (summary['renewed'] or summary['reordered'] or summary['deployed']):
        if summary['errors']:
            print("No certificates were renewed or installed due to errors.")
        else:
            print("No certificates needed renewal. All certificates are up to date.")


def make_installer(creds: dict):
    f5 = creds.get('f5') or {}
    if not f5.get('username'):
        return None
    return F5Installer(f5.get('username'), f5.get('password'), verify_ssl=f5.get('verify_ssl', False))


def run(args) -> int:
    settings = load_settings(args.config, staging=args.staging)
    if args.account_key:
        settings.acme.account_key = args.account_key
    try:
        creds = load_yaml(args.credentials)
    except OSError as e:
        raise ConfigError(f"Cannot read credentials file {args.credentials}: {e}") from e
    secrets = YamlSecretProvider(creds)
    store = CertificateStore(settings.storage_root)

    if args.zone:
        dns = make_record_manager(secrets.get_credentials(args.tenant))
        zone = dns.resolve_hosted_zone(args.zone)
        print(f"Name:  {args.zone.rstrip('.')}")
        print(f"Zone:  {zone.name} ({zone.id})")
        return 0

    show_list = args.list or not (args.deploy or args.sweep)
    if show_list:
        print_list(settings, store, args.days)
    if args.list:
        return 0

    ca = AcmeClient(settings.acme.directory_url, email=settings.acme.email,
                    account_key_path=settings.acme.account_key,
                    user_agent=settings.acme.user_agent, timeout=settings.acme.network_timeout)
    ledger = None if args.dry_run else ChallengeLedger(settings.ledger_path)
    installer = make_installer(creds)
    manager = CertificateManager(settings, secrets, ca, store, ledger=ledger, installer=installer)

    summary = {
        'renewed': [],
        'reordered': [],
        'deployed': [],
        'errors': []
    }
    try:
        if not args.dry_run:
            swept = manager.start()
            if swept:
                log.info("Removed %d stale challenge record(s)", swept)
        if args.sweep:
            return 0

        if args.deploy:
            for entry in settings.certificates:
                targets = entry.f5_targets or settings.f5_targets
                if not store.exists(entry.domain):
                    log.warning("Certificate %s not found under %s, skipping", entry.domain, store.root)
                    continue
                if installer is None:
                    summary['errors'].append(f"Install {entry.domain}: no f5 credentials configured")
                    continue
                bundle = store.load(entry.domain)
                for host in targets:
                    try:
                        installer.install(host, bundle, entry.domain)
                        summary['deployed'].append(entry.domain)
                    except CertPilotError as e:
                        log.error("Failed to install %s on %s: %s", entry.domain, host, e.detail)
                        summary['errors'].append(f"Install {entry.domain} on {host}: {e.detail}")
            print_summary(summary)
            return 1 if summary['errors'] else 0

        submitted = []
        for entry in settings.certificates:
            reason = "forced" if args.force else manager.needs_renewal(entry.domain, args.days, {entry.domain})
            if reason is None:
                log.info("Certificate %s is valid for more than %d days, skipping", entry.domain, args.days)
                continue
            targets = entry.f5_targets or settings.f5_targets
            if args.dry_run:
                log.info("DRY RUN: would request certificate for %s (%s)", entry.domain, reason)
                for host in targets:
                    log.info("DRY RUN: would install le_%s on %s", entry.domain, host)
                continue
            log.info("Requesting certificate for %s (%s)", entry.domain, reason)
            try:
                req = manager.submit(entry.domain, entry.tenant)
            except (CertPilotError, ValueError) as e:
                summary['errors'].append(f"{entry.domain}: {e}")
                continue
            submitted.append((req.id, entry, targets, reason))

        for request_id, entry, targets, reason in submitted:
            req = manager.wait(request_id)
            if req.status != RequestStatus.ISSUED:
                summary['errors'].append(f"{entry.domain}: {req.error_message}")
                continue
            summary['reordered' if reason == "domain changes" else 'renewed'].append(entry.domain)
            if not targets:
                continue
            try:
                req = manager.install(request_id, targets)
            except CertPilotError as e:
                summary['errors'].append(f"Install {entry.domain}: {e.detail}")
                continue
            if req.status == RequestStatus.INSTALLED:
                summary['deployed'].append(entry.domain)
            summary['errors'].extend(f"Install {entry.domain}: {w}" for w in req.install_warnings)
    finally:
        manager.shutdown(wait=True, cancel_active=True)

    print_summary(summary)
    return 1 if summary['errors'] else 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        return run(args)
    except CertPilotError as e:
        log.error("%s", e.describe())
        return 2


if __name__ == '__main__':
    sys.exit(main())
