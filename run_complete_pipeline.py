#!/usr/bin/env python3
"""
Complete User Profile Pipeline: Secrets → Campaign Manager → CSV snapshots
==========================================================================

This script runs a bulk user update end to end:
1. Validates the configuration
2. Loads credentials (Google Secret Manager or environment)
3. Lists every account user profile visible to the caller and deduplicates them
4. Writes a "before" snapshot CSV
5. Applies the bulk action (activate, deactivate or assign-role)
6. Writes an "after" snapshot CSV and the audit trail

Usage:
  # List only (snapshot of current users)
  python run_complete_pipeline.py

  # Deactivate every user matching a search string
  python run_complete_pipeline.py --action deactivate --search "@agency.example"

  # Dry run (no actual changes)
  python run_complete_pipeline.py --action activate --dry-run
"""

import os
import sys
import argparse
import logging
from datetime import datetime

import profile_manager_core

logger = logging.getLogger(__name__)


def validate_config(config_path: str) -> bool:
    """Validate that the config can be loaded and names a credential source"""
    logger.info(f"Validating configuration: {config_path}")

    try:
        config = profile_manager_core.Config(config_path)
    except profile_manager_core.ConfigurationError as e:
        logger.error(f"Failed to load configuration: {e}")
        return False

    project_id = config.get('google_cloud.project_id')
    secret_id = config.get('google_cloud.secret_id')

    if not (project_id and secret_id) and not os.getenv('CM_ACCESS_TOKEN'):
        logger.error("No credential source configured")
        logger.error("Either export CM_ACCESS_TOKEN or add to the config:")
        logger.error("  google_cloud:")
        logger.error("    project_id: 'your-project-id'")
        logger.error("    secret_id: 'cm-user-manager-credentials'")
        return False

    logger.info("✅ Configuration valid")
    logger.info(f"   Secret Manager: {f'{project_id}/{secret_id}' if secret_id else 'not configured'}")
    logger.info(f"   Excluded accounts: {config.get('filters.excluded_account_ids', [])}")
    return True


def snapshot_path(output_dir: str, label: str) -> str:
    return os.path.join(output_dir, f"users_{label}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv")


def run_pipeline(config_path: str, profile_id: str = None, action: str = 'list',
                 search: str = None, role_name: str = None, dry_run: bool = False) -> bool:
    """
    Run the complete pipeline

    Args:
        config_path: Path to profile_manager_config.yaml
        profile_id: Default user profile for role lookups (optional, can be in secret)
        action: list, activate, deactivate or assign-role
        search: Server-side search string applied when listing users
        role_name: Exact role name for assign-role
        dry_run: If True, no actual changes made

    Returns:
        True if every requested update succeeded
    """
    logger.info("=" * 80)
    logger.info("COMPLETE USER PROFILE PIPELINE")
    logger.info("=" * 80)
    logger.info(f"Started at: {datetime.now().isoformat()}")
    logger.info(f"Config: {config_path}")
    logger.info(f"Action: {action}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("=" * 80)

    logger.info("STEP 1: Validate Configuration")
    if not validate_config(config_path):
        logger.error("Configuration validation failed")
        return False

    try:
        logger.info("STEP 2: Initialize Manager")
        manager = profile_manager_core.ProfileManager(
            config_path=config_path,
            profile_id=profile_id,
            dry_run=dry_run
        )
        output_dir = manager.config.get('logging.output_dir', './logs')

        logger.info("STEP 3: Collect Users")
        users = manager.collect_account_user_profiles({'searchString': search} if search else None)
        manager.export_users(snapshot_path(output_dir, 'before'), users)

        if action == 'list':
            logger.info("✅ PIPELINE COMPLETED (list only)")
            return True

        logger.info(f"STEP 4: Apply {action}")
        try:
            if action == 'assign-role':
                updated = manager.assign_role(users, role_name)
            else:
                updated = manager.set_active(users, action == 'activate')
        finally:
            manager.audit.save()

        logger.info("STEP 5: Results Summary")
        manager.export_users(snapshot_path(output_dir, 'after'), updated)
        results = manager.patcher.results
        logger.info(f"   Total: {results['total']}")
        logger.info(f"   Succeeded: {results['success']}")
        logger.info(f"   Failed: {results['failed']}")
        for outcome in results['outcomes']:
            if not outcome.success:
                logger.info(f"   ❌ {outcome.record_id}: {outcome.error}")

        logger.info(f"Completed at: {datetime.now().isoformat()}")
        return results['failed'] == 0

    except profile_manager_core.AuthenticationError as e:
        logger.error("❌ AUTHENTICATION FAILED")
        logger.error(f"Error: {e}")
        logger.error("Troubleshooting:")
        logger.error("1. Verify the secret: gcloud secrets versions access latest --secret=<secret_id>")
        logger.error("2. Access tokens expire after an hour; mint a fresh one")
        return False

    except LookupError as e:
        logger.error(f"❌ {e}")
        return False

    except Exception:
        logger.exception("❌ PIPELINE FAILED")
        return False


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='Complete User Profile Pipeline: Secrets → Campaign Manager → CSV snapshots',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_complete_pipeline.py
  python run_complete_pipeline.py --action deactivate --search "@agency.example"
  python run_complete_pipeline.py --action assign-role --role-name "Read Only" --profile-id 1234567
        """
    )
    parser.add_argument(
        '--config',
        default='profile_manager_config.yaml',
        help='Path to configuration file (default: profile_manager_config.yaml)'
    )
    parser.add_argument('--profile-id', help='Campaign Manager user profile ID (optional if in Secret Manager)')
    parser.add_argument(
        '--action',
        default='list',
        choices=['list', 'activate', 'deactivate', 'assign-role'],
        help='Bulk action to run (default: list)'
    )
    parser.add_argument('--search', help='Server-side search string for users')
    parser.add_argument('--role-name', help='Exact role name (required for assign-role)')
    parser.add_argument('--dry-run', action='store_true', help='Run without making actual changes')

    args = parser.parse_args()

    if args.action == 'assign-role' and not args.role_name:
        parser.error("--role-name is required for assign-role")

    if not os.path.exists(args.config):
        print(f"Configuration file not found: {args.config}", file=sys.stderr)
        print(f"Create one from the example:\n  cp profile_manager_config.example.yaml {args.config}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    success = run_pipeline(
        config_path=args.config,
        profile_id=args.profile_id,
        action=args.action,
        search=args.search,
        role_name=args.role_name,
        dry_run=args.dry_run
    )

    sys.exit(0 if success else 1)


if __name__ == '__main__':
    main()
