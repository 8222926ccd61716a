"""
Reconciliation driver.

Runs one reconciliation as a small state machine:

    Planning -> Reported                     (dry run)
    Planning -> AwaitingConfirmation         (deletes pending, not forced)
    Planning -> Applying -> Summarizing -> Done

Applying runs creates, then updates, then deletes. Item and batch failures are
recorded in the run summary and never abort the run; completed work is never
rolled back.
"""

import secrets
import string
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Sequence

from directory_sync.delta import MANAGER_FIELD, calculate_delta, validate_desired_records
from directory_sync.gateway.base import DirectoryAPIError, DirectoryGateway
from directory_sync.gateway.credentials import CredentialError
from directory_sync.logging_setup import audit_logger
from directory_sync.managers import ManagerResolver, ManagerTarget
from directory_sync.models import (
    Action,
    CreateRequest,
    CreatedAccount,
    Delta,
    DeleteRequest,
    DesiredRecord,
    LicenseAssignment,
    ObservedRecord,
    UserUpdate,
)
from directory_sync.protection import AccountProtectionFilter
from directory_sync.report import generate_diff_report, generate_summary

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 16
PASSWORD_SYMBOLS = '!@#$%^&*'


class ReconciliationError(Exception):
    """Raised when the plan cannot be built from the directory snapshot."""
    pass


class RunState(str, Enum):
    PLANNING = "Planning"
    REPORTED = "Reported"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    APPLYING = "Applying"
    SUMMARIZING = "Summarizing"
    DONE = "Done"


@dataclass(frozen=True)
class RunOptions:
    """Caller intent for one run."""

    dry_run: bool = False
    force: bool = False
    skip_create: bool = False
    skip_update: bool = False
    skip_delete: bool = False
    show_diff: bool = False
    skip_licenses: bool = False


@dataclass
class RunSummary:
    """Outcome of one reconciliation run."""

    state: RunState = RunState.PLANNING
    delta: Optional[Delta] = None
    report: str = ''
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    protected: int = 0
    managers_assigned: int = 0
    managers_removed: int = 0
    licenses_assigned: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    created_accounts: List[CreatedAccount] = field(default_factory=list)
    updated_emails: List[str] = field(default_factory=list)

    @property
    def halted(self) -> bool:
        return self.state == RunState.AWAITING_CONFIRMATION

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    @property
    def exit_code(self) -> int:
        return 1 if self.errors else 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'unchanged': self.unchanged,
            'protected': self.protected,
            'managers_assigned': self.managers_assigned,
            'managers_removed': self.managers_removed,
            'licenses_assigned': self.licenses_assigned,
            'errors': len(self.errors),
            'warnings': len(self.warnings),
        }


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """
    Generate a random password with at least one upper, lower, digit and symbol.

    Args:
        length: Password length, at least 4
    """
    if length < 4:
        raise ValueError("Password length must be at least 4")

    alphabet = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
    chars = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SYMBOLS),
    ]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))

    # Shuffle so the required classes are not always in front
    for index in range(len(chars) - 1, 0, -1):
        swap = secrets.randbelow(index + 1)
        chars[index], chars[swap] = chars[swap], chars[index]
    return ''.join(chars)


class ReconciliationDriver:
    """
    Orchestrates planning and application of one reconciliation run.

    Args:
        gateway: Remote directory gateway
        protection_filter: Rules keeping protected accounts out of the plan
        protect_updates: Also keep protected accounts out of the update set
        password_generator: Callable returning an initial password for creates
        license_sku_ids: Subscription SKUs assigned to every account created
    """

    def __init__(
        self,
        gateway: DirectoryGateway,
        protection_filter: Optional[AccountProtectionFilter] = None,
        protect_updates: bool = False,
        password_generator=generate_password,
        license_sku_ids: Sequence[str] = ()
    ):
        self.gateway = gateway
        self.protection_filter = protection_filter
        self.protect_updates = protect_updates
        self.password_generator = password_generator
        self.license_sku_ids = list(license_sku_ids)

    async def run(
        self,
        desired: Sequence[DesiredRecord],
        custom_fields: Sequence[str],
        options: Optional[RunOptions] = None
    ) -> RunSummary:
        """
        Execute one reconciliation run.

        Args:
            desired: Declared records
            custom_fields: Custom attribute names from the source columns
            options: Run options

        Returns:
            RunSummary describing the final state and counts

        Raises:
            ConfigurationError: If the desired state violates identity rules
            ReconciliationError: If the directory snapshot cannot be read
        """
        options = options or RunOptions()
        summary = RunSummary()

        delta = await self.plan(desired, custom_fields)
        summary.delta = delta
        summary.unchanged = len(delta.no_change)
        summary.protected = len(delta.protected)
        for account in delta.protected:
            summary.warnings.append(f"Protected account excluded: {account.email} ({account.reason})")

        if options.dry_run or options.show_diff:
            summary.report = generate_diff_report(delta)
        else:
            summary.report = generate_summary(delta)
        logger.info(f"Plan: {generate_summary(delta)}")

        if options.dry_run:
            summary.state = RunState.REPORTED
            logger.info("Dry run: plan reported, no changes applied")
            return summary

        if delta.delete and not options.force and not options.skip_delete:
            summary.state = RunState.AWAITING_CONFIRMATION
            logger.warning(f"{len(delta.delete)} accounts would be deleted. "
                           f"Re-run with --force to apply or --skip-delete to leave them")
            return summary

        summary.state = RunState.APPLYING

        peer_ids: Dict[str, str] = {}
        if options.skip_create:
            logger.info("Create phase skipped")
        else:
            peer_ids = await self._apply_creates(delta.create, summary, assign_licenses=not options.skip_licenses)

        if options.skip_update:
            logger.info("Update phase skipped")
        else:
            await self._apply_updates(delta.update, peer_ids, summary)

        if options.skip_delete:
            logger.info("Delete phase skipped")
        else:
            await self._apply_deletes(delta.delete, summary)

        summary.state = RunState.SUMMARIZING
        self._log_summary(summary)
        summary.state = RunState.DONE
        return summary

    async def plan(self, desired: Sequence[DesiredRecord], custom_fields: Sequence[str]) -> Delta:
        """
        Read the directory snapshot and compute the delta.

        Identity errors in the desired state are raised before any remote call.
        """
        validate_desired_records(desired)

        try:
            observed = await self.gateway.list_users(custom_fields)
        except (DirectoryAPIError, CredentialError) as e:
            raise ReconciliationError(f"Failed to read directory state: {e}") from e

        if self.protection_filter is None:
            return calculate_delta(desired, custom_fields, observed)

        if self.protection_filter.requires_roles:
            observed = await self._attach_roles(desired, custom_fields, observed)

        return calculate_delta(desired, custom_fields, observed,
                               protection_filter=self.protection_filter,
                               protect_updates=self.protect_updates)

    async def _attach_roles(
        self,
        desired: Sequence[DesiredRecord],
        custom_fields: Sequence[str],
        observed: List[ObservedRecord]
    ) -> List[ObservedRecord]:
        # Roles are only needed for accounts the unprotected plan would mutate
        unfiltered = calculate_delta(desired, custom_fields, observed, log_summary=False)
        candidates = list(unfiltered.delete)
        if self.protect_updates:
            candidates.extend(unfiltered.update)
        user_ids = [action.user_id for action in candidates]
        if not user_ids:
            return observed

        logger.info(f"Checking directory roles for {len(user_ids)} accounts")
        try:
            roles = await self.gateway.get_roles_many(user_ids)
        except (DirectoryAPIError, CredentialError) as e:
            logger.error(f"Directory role lookup failed, treating candidates as protected: {e}")
            roles = {}

        wanted = set(user_ids)
        attached = []
        for record in observed:
            if record.user_id in wanted:
                found = roles.get(record.user_id)
                record = replace(record, roles=tuple(found) if found is not None else None)
            attached.append(record)
        return attached

    async def _apply_creates(
        self,
        actions: Sequence[Action],
        summary: RunSummary,
        assign_licenses: bool = True
    ) -> Dict[str, str]:
        """
        Create accounts, write their custom attributes, assign licenses and wire managers.

        Returns:
            Lower-cased e-mail to id of every account created in this run
        """
        if not actions:
            return {}

        logger.info(f"Creating {len(actions)} accounts")
        desired_by_key = {action.key: action.desired for action in actions}
        requests = [
            CreateRequest(
                email=action.desired.email,
                display_name=action.desired.display_name or action.desired.email.split('@', 1)[0],
                password=self.password_generator(),
                attributes=dict(action.desired.attributes),
            )
            for action in actions
        ]

        result = await self.gateway.create_many(requests)

        peer_ids: Dict[str, str] = {}
        for account in result.successful:
            peer_ids[account.email.strip().lower()] = account.user_id
            summary.created_accounts.append(account)
            summary.created += 1
            audit_logger.log_user_operation('CREATE', account.email, True)
        for failure in result.failed:
            self._record_failure(summary, 'CREATE', failure.item.email, failure.error)

        extension_writes = [
            UserUpdate(
                user_id=account.user_id,
                email=account.email,
                custom_attributes=dict(desired_by_key[account.email.strip().lower()].custom_attributes),
                create_extension=True,
            )
            for account in result.successful
            if desired_by_key[account.email.strip().lower()].custom_attributes
        ]
        if extension_writes:
            extension_result = await self.gateway.update_many(extension_writes)
            for failure in extension_result.failed:
                self._record_failure(summary, 'CUSTOM_ATTRIBUTES', failure.item.email, failure.error)

        if assign_licenses and self.license_sku_ids and result.successful:
            await self._assign_licenses(result.successful, summary)

        targets = [
            ManagerTarget(user_id=account.user_id, desired=desired_by_key[account.email.strip().lower()])
            for account in result.successful
            if desired_by_key[account.email.strip().lower()].manager_email
        ]
        if targets:
            resolution = await ManagerResolver(self.gateway).resolve(targets, peer_ids)
            summary.warnings.extend(resolution.warnings)
            if resolution.assignments:
                manager_result = await self.gateway.assign_managers_many(resolution.assignments)
                for instruction in manager_result.successful:
                    summary.managers_assigned += 1
                    audit_logger.log_user_operation('ASSIGN_MANAGER', instruction.email, True,
                                                    f"manager={instruction.manager_email}")
                for failure in manager_result.failed:
                    self._record_failure(summary, 'ASSIGN_MANAGER', failure.item.email, failure.error)

        return peer_ids

    async def _assign_licenses(self, accounts: Sequence[CreatedAccount], summary: RunSummary):
        # A failed assignment leaves a usable account, so it is a warning only
        assignments = [
            LicenseAssignment(user_id=account.user_id, email=account.email, sku_id=sku_id)
            for account in accounts
            for sku_id in self.license_sku_ids
        ]
        logger.info(f"Assigning {len(self.license_sku_ids)} licenses to {len(accounts)} new accounts")
        result = await self.gateway.assign_licenses_many(assignments)

        for assignment in result.successful:
            summary.licenses_assigned += 1
            audit_logger.log_user_operation('ASSIGN_LICENSE', assignment.email, True, f"sku={assignment.sku_id}")
        for failure in result.failed:
            message = f"License {failure.item.sku_id} not assigned to {failure.item.email}: {failure.error}"
            logger.warning(message)
            summary.warnings.append(message)
            audit_logger.log_user_operation('ASSIGN_LICENSE', failure.item.email, False, failure.error)

    async def _apply_updates(self, actions: Sequence[Action], peer_ids: Dict[str, str], summary: RunSummary):
        if not actions:
            return

        logger.info(f"Updating {len(actions)} accounts")
        operations = []
        for action in actions:
            operations.extend(_build_update_operations(action))

        # Only accounts with at least one applied write count as updated
        failed_keys = set()
        applied_keys = set()
        if operations:
            result = await self.gateway.update_many(operations)
            for applied in result.successful:
                applied_keys.add(applied.email.strip().lower())
            for failure in result.failed:
                failed_keys.add(failure.item.email.strip().lower())
                self._record_failure(summary, 'UPDATE', failure.item.email, failure.error)

        targets = [
            ManagerTarget(user_id=action.user_id, desired=action.desired, observed=action.observed)
            for action in actions
            if action.key not in failed_keys and any(change.field == MANAGER_FIELD for change in action.changes)
        ]
        if targets:
            resolution = await ManagerResolver(self.gateway).resolve(targets, peer_ids)
            summary.warnings.extend(resolution.warnings)
            for instruction in resolution.instructions:
                operation = 'REMOVE_MANAGER' if instruction.is_removal else 'ASSIGN_MANAGER'
                try:
                    if instruction.is_removal:
                        await self.gateway.clear_manager_ref(instruction.user_id)
                        summary.managers_removed += 1
                    else:
                        await self.gateway.set_manager_ref(instruction.user_id, instruction.manager_id)
                        summary.managers_assigned += 1
                    applied_keys.add(instruction.email.strip().lower())
                    audit_logger.log_user_operation(operation, instruction.email, True,
                                                    f"manager={instruction.manager_email or 'none'}")
                except DirectoryAPIError as e:
                    failed_keys.add(instruction.email.strip().lower())
                    self._record_failure(summary, operation, instruction.email, str(e))

        for action in actions:
            if action.key in failed_keys or action.key not in applied_keys:
                continue
            summary.updated += 1
            summary.updated_emails.append(action.email)
            fields = ', '.join(change.field for change in action.changes)
            audit_logger.log_user_operation('UPDATE', action.email, True, f"fields={fields}")

    async def _apply_deletes(self, actions: Sequence[Action], summary: RunSummary):
        if not actions:
            return

        logger.info(f"Deleting {len(actions)} accounts")
        requests = [DeleteRequest(user_id=action.user_id, email=action.email) for action in actions]
        result = await self.gateway.delete_many(requests)

        for request in result.successful:
            summary.deleted += 1
            audit_logger.log_user_operation('DELETE', request.email, True)
        for failure in result.failed:
            self._record_failure(summary, 'DELETE', failure.item.email, failure.error)

    def _record_failure(self, summary: RunSummary, operation: str, email: str, error: str):
        summary.errors.append(f"{operation} {email}: {error}")
        audit_logger.log_user_operation(operation, email, False, error)

    def _log_summary(self, summary: RunSummary):
        logger.info("=" * 60)
        logger.info("RECONCILIATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Created: {summary.created}")
        logger.info(f"Updated: {summary.updated}")
        logger.info(f"Deleted: {summary.deleted}")
        logger.info(f"Unchanged: {summary.unchanged}")
        logger.info(f"Protected: {summary.protected}")
        logger.info(f"Managers assigned: {summary.managers_assigned}")
        logger.info(f"Managers removed: {summary.managers_removed}")
        logger.info(f"Licenses assigned: {summary.licenses_assigned}")
        logger.info(f"Warnings: {len(summary.warnings)}")
        logger.info(f"Errors: {len(summary.errors)}")

        for error in summary.errors:
            logger.error(f"  {error}")

        logger.info("=" * 60)


def _build_update_operations(action: Action) -> List[UserUpdate]:
    """Split an update action into a standard attribute and a custom attribute operation."""
    attributes = {}
    custom_attributes = {}

    for change in action.changes:
        if change.field == MANAGER_FIELD:
            continue
        if change.is_custom_property:
            custom_attributes[change.field] = change.new_value
        else:
            attributes[change.field] = change.new_value

    operations = []
    if attributes:
        operations.append(UserUpdate(user_id=action.user_id, email=action.email, attributes=attributes))
    if custom_attributes:
        operations.append(UserUpdate(
            user_id=action.user_id,
            email=action.email,
            custom_attributes=custom_attributes,
            create_extension=action.observed.custom_attributes is None,
        ))
    return operations
