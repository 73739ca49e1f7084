"""
Installation orchestrator.

``process_installation`` runs the whole pipeline for one request:

    validate → duplicate-IP check → quota check → TCP probe → SSH auth →
    OS check → debit quota + create pending record → compose payload →
    dispatch → notify → start monitoring

Every expected failure comes back as ``InstallResult(success=False)``.
Nothing before the debit touches the ledger or the store; a failure after
it marks the record failed, which refunds the credit.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.config import config
from backend.monitoring.install_monitor import InstallMonitor, MonitorThresholds
from backend.notifications.dispatcher import EmailChannel, NotificationDispatcher
from backend.notifications.registry import NotificationRegistry
from backend.persistence.db import new_session
from backend.persistence.models import AuthType, InstallRecord, InstallStatus
from backend.services.email_service import email_service
from backend.services.geoip_service import GeoIPService
from backend.services.install_state_machine import (
    InstallNotFoundError,
    InstallStateMachine,
    InvalidTransitionError,
)
from backend.services.install_validator import InstallRequest, InstallValidator
from backend.services.payload_composer import PayloadComposer, build_obfuscator
from backend.services.provisioning_errors import (
    DuplicateInstallError,
    ProvisioningError,
    QuotaExhaustedError,
)
from backend.services.quota_ledger import QuotaLedger
from backend.services.remote_executor import RemoteExecutor
from backend.services.remote_session import RemoteSessionProber
from backend.services.signed_url import SignedUrlIssuer
from backend.services.windows_catalog import WindowsCatalog
from backend.utils.verbosity_logger import sanitize_log

logger = logging.getLogger(__name__)

QUOTA_MESSAGE = "Insufficient quota. Please purchase more quota to continue."
PENDING_MESSAGE = "Installation started, waiting for the installer to report progress"
UNEXPECTED_MESSAGE = "An unexpected error occurred while starting the installation"


@dataclass
class InstallResult:
    """Outcome of ``process_installation``/``cancel_installation``."""

    success: bool
    message: str
    install_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"success": self.success, "message": self.message}
        if self.install_id is not None:
            data["installId"] = self.install_id
        return data


class InstallService:
    """Sequences validation, probing, quota, dispatch and monitoring."""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        session_factory,
        validator: InstallValidator,
        prober: RemoteSessionProber,
        composer: PayloadComposer,
        executor: RemoteExecutor,
        ledger: QuotaLedger,
        state_machine: InstallStateMachine,
        monitor: Optional[InstallMonitor] = None,
        geoip: Optional[GeoIPService] = None,
        notifier: Optional[NotificationDispatcher] = None,
        registry: Optional[NotificationRegistry] = None,
        default_region: str = "global",
    ):
        self.session_factory = session_factory
        self.validator = validator
        self.prober = prober
        self.composer = composer
        self.executor = executor
        self.ledger = ledger
        self.state_machine = state_machine
        self.monitor = monitor
        self.geoip = geoip
        self.notifier = notifier
        self.registry = registry
        self.default_region = default_region

    # Queries

    def find_active_for_ip(self, ip: str, db=None) -> Optional[InstallRecord]:
        """An in-flight install for ``ip`` belonging to any user."""
        session = db or self.session_factory()
        try:
            return (
                session.query(InstallRecord)
                .filter(
                    InstallRecord.ip == ip,
                    InstallRecord.status.in_(InstallStatus.ACTIVE),
                )
                .first()
            )
        finally:
            if db is None:
                session.close()

    def get_install_by_id(
        self, install_id: int, user_id: Optional[int] = None
    ) -> Optional[InstallRecord]:
        record = self.state_machine.get(install_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            return None
        return record

    def get_user_active_installs(self, user_id: int) -> List[InstallRecord]:
        db = self.session_factory()
        try:
            return (
                db.query(InstallRecord)
                .filter(
                    InstallRecord.user_id == user_id,
                    InstallRecord.status.in_(InstallStatus.ACTIVE),
                )
                .order_by(InstallRecord.created_at.desc())
                .all()
            )
        finally:
            db.close()

    def get_quota(self, user_id: int) -> int:
        return self.ledger.available(user_id)

    # Pipeline

    async def process_installation(self, request: InstallRequest) -> InstallResult:
        """Run the pipeline; never raises."""
        try:
            return await self._process(request)
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error(
                "Unexpected error processing install for user %s on %s: %s",
                request.user_id,
                sanitize_log(request.ip),
                e,
                exc_info=True,
            )
            return InstallResult(success=False, message=UNEXPECTED_MESSAGE)

    async def _process(self, request: InstallRequest) -> InstallResult:
        loop = asyncio.get_running_loop()

        validation = await loop.run_in_executor(None, self.validator.validate, request)
        if not validation.valid:
            logger.info(
                "Install request from user %s rejected: %s",
                request.user_id,
                sanitize_log(validation.message()),
            )
            return InstallResult(success=False, message=validation.message())

        ip = request.ip.strip()
        if await loop.run_in_executor(None, self.find_active_for_ip, ip) is not None:
            return InstallResult(
                success=False,
                message=f"An installation is already in progress for {ip}",
            )

        if await loop.run_in_executor(None, self.ledger.available, request.user_id) < 1:
            return InstallResult(success=False, message=QUOTA_MESSAGE)

        try:
            session = await loop.run_in_executor(
                None,
                self.prober.connect,
                ip,
                request.ssh_port,
                request.auth_type,
                request.credential(),
            )
        except ProvisioningError as e:
            logger.info("Target %s rejected: %s", sanitize_log(ip), e.message)
            return InstallResult(success=False, message=e.message)

        try:
            region = await loop.run_in_executor(None, self._resolve_region, ip)
            try:
                install_id = await loop.run_in_executor(
                    None, self._create_record, request, ip, region
                )
            except ProvisioningError as e:
                return InstallResult(success=False, message=e.message)

            failure = await self._compose_and_dispatch(loop, session, install_id, request, ip, region)
            if failure is not None:
                await loop.run_in_executor(
                    None,
                    functools.partial(
                        self.state_machine.transition,
                        install_id,
                        InstallStatus.FAILED,
                        message=failure,
                    ),
                )
                return InstallResult(success=False, message=failure, install_id=install_id)
        finally:
            session.close()

        if self.notifier is not None:
            await loop.run_in_executor(
                None,
                self.notifier.notify_install_status,
                install_id,
                request.user_id,
                InstallStatus.PENDING,
                PENDING_MESSAGE,
                ip,
                request.windows_version,
            )
        if self.monitor is not None:
            self.monitor.start_monitoring(install_id)

        logger.info(
            "Install %s dispatched for user %s to %s (%s)",
            install_id,
            request.user_id,
            sanitize_log(ip),
            request.windows_version,
        )
        return InstallResult(
            success=True,
            message="Installation started successfully",
            install_id=install_id,
        )

    def _resolve_region(self, ip: str) -> str:
        if self.geoip is None:
            return self.default_region
        return self.geoip.resolve_region(ip)

    def _create_record(self, request: InstallRequest, ip: str, region: str) -> int:
        """Debit one credit and insert the pending record in one transaction."""
        db = self.session_factory()
        try:
            with self.ledger.user_lock(request.user_id):
                if self.find_active_for_ip(ip, db=db) is not None:
                    raise DuplicateInstallError(
                        f"An installation is already in progress for {ip}"
                    )
                if not self.ledger.reserve(request.user_id, 1, db=db):
                    db.rollback()
                    raise QuotaExhaustedError(QUOTA_MESSAGE)

                record = InstallRecord(
                    user_id=request.user_id,
                    ip=ip,
                    ssh_port=request.ssh_port,
                    auth_type=request.auth_type,
                    passwd_vps=(
                        request.password if request.auth_type == AuthType.PASSWORD else None
                    ),
                    ssh_key=(
                        request.ssh_key if request.auth_type == AuthType.SSH_KEY else None
                    ),
                    win_ver=request.windows_version.strip(),
                    passwd_rdp=request.rdp_password,
                    status=InstallStatus.PENDING,
                    status_message=PENDING_MESSAGE,
                    region=region,
                )
                db.add(record)
                db.commit()
                return record.id
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def _compose_and_dispatch(
        self, loop, session, install_id, request, ip, region
    ) -> Optional[str]:
        """Returns None on success, otherwise the failure message."""
        try:
            payload = await loop.run_in_executor(
                None,
                self.composer.compose,
                install_id,
                ip,
                request.windows_version.strip(),
                request.rdp_password,
                region,
            )
            await loop.run_in_executor(None, self.executor.dispatch, session, payload.blob)
        except ProvisioningError as e:
            logger.warning("Install %s dispatch failed: %s", install_id, e.message)
            return e.message
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Install %s could not be started: %s", install_id, e, exc_info=True)
            return "Failed to start the installer on the VPS"
        return None

    # User actions and callbacks

    def cancel_installation(self, install_id: int, user_id: int) -> InstallResult:
        try:
            self.state_machine.cancel(install_id, user_id)
        except InstallNotFoundError:
            return InstallResult(success=False, message="Installation not found")
        except InvalidTransitionError as e:
            return InstallResult(success=False, message=str(e), install_id=install_id)
        return InstallResult(
            success=True,
            message="Installation cancelled and quota refunded",
            install_id=install_id,
        )

    def handle_download_access(self, install_id: int, user_agent: str):
        return self.state_machine.handle_download_access(install_id, user_agent)

    def handle_progress(self, install_id: int, step: str, status: str, message: str):
        return self.state_machine.handle_progress(install_id, step, status, message)

    def add_quota(self, user_id: int, amount: int, reason: Optional[str] = None) -> int:
        return self.ledger.add(user_id, amount, reason)


def build_install_service(session_factory=new_session) -> InstallService:
    """Wire an ``InstallService`` and its collaborators from the configuration."""
    install_config = config.get_install_config()
    download_config = config.get_download_config()
    public_url = config.get_public_url()

    registry = NotificationRegistry()
    notifier = NotificationDispatcher(
        registry, channels=[EmailChannel(session_factory, email_service)]
    )
    ledger = QuotaLedger(session_factory, notifier=notifier)
    state_machine = InstallStateMachine(
        session_factory, ledger, notifier=notifier, download_config=download_config
    )
    signer = SignedUrlIssuer(
        secret=config.get_download_secret(),
        public_url=public_url,
        decoy_segment=download_config["decoy_segment"],
        ttl_seconds=download_config["signature_ttl_seconds"],
    )
    composer = PayloadComposer(
        signer,
        build_obfuscator(config.get_obfuscation_config()),
        progress_endpoint=f"{public_url}/api/install/progress",
        image_filename=install_config["image_filename"],
        config_filename=install_config["config_filename"],
        template_path=install_config.get("script_template"),
    )
    monitor = InstallMonitor(
        state_machine, MonitorThresholds.from_config(config.get_monitoring_config())
    )
    return InstallService(
        session_factory=session_factory,
        validator=InstallValidator(
            WindowsCatalog(session_factory),
            rdp_password_min_length=install_config["rdp_password_min_length"],
        ),
        prober=RemoteSessionProber(install_config),
        composer=composer,
        executor=RemoteExecutor(
            process_name=install_config["process_name"],
            timeout=install_config["dispatch_timeout"],
        ),
        ledger=ledger,
        state_machine=state_machine,
        monitor=monitor,
        geoip=GeoIPService(),
        notifier=notifier,
        registry=registry,
        default_region=download_config["default_region"],
    )
