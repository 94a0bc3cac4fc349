"""
Azure OS disk shrink workflow

Shrinks the managed OS disk of a VM without touching the file system:
the disk is copied into a page blob, the blob is truncated to the new
size, the footer of an empty disk of that size is transplanted onto it,
and a new managed disk imported from the blob replaces the OS disk.

The partition inside the guest must already end below the new size.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.compute.models import DiskCreateOption, GrantAccessData
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient
from azure.storage.blob import BlobClient, BlobServiceClient, ContainerClient

from .compensation import CompensatingWorkflow
from .config import ShrinkConfig
from .copy_wait import wait_for_copy_completion
from .errors import CleanupError, ReadError, ResizeError, ShrinkError, WriteError
from .footer import FOOTER_SIZE
from .images import PageBlobImage
from .transplant import transplant_footer

GIB = 1024 ** 3
STATE_DIR = 'var/state'

logger = logging.getLogger(__name__)


@dataclass
class ShrinkState:
    """Shrink progress, persisted so an interrupted run can be cleaned up by hand"""
    vm_name: str
    resource_group: str
    old_disk_id: str
    old_disk_name: str
    old_size_gb: int
    new_size_gb: int
    started_at: str
    step: str = 'started'
    blob_url: Optional[str] = None
    reference_blob_url: Optional[str] = None
    new_disk_id: Optional[str] = None
    new_disk_name: Optional[str] = None
    completed: bool = False


def format_duration(seconds: float) -> str:
    """Format duration in a human-readable way"""
    if seconds < 60:
        return f"{seconds:.1f} seconds"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f} minutes ({seconds:.1f} seconds)"
    else:
        hours = seconds / 3600
        minutes = (seconds % 3600) / 60
        return f"{hours:.1f} hours, {minutes:.1f} minutes ({seconds:.1f} seconds)"


def state_file_for(vm_name: str, state_dir: str = STATE_DIR) -> str:
    return os.path.join(state_dir, f"{vm_name}_shrink.json")


def resource_group_from_id(resource_id: str, default: Optional[str] = None) -> Optional[str]:
    """Resource group segment of an ARM resource id, or default if there is none"""
    parts = (resource_id or '').strip('/').split('/')
    for key, value in zip(parts, parts[1:]):
        if key.lower() == 'resourcegroups':
            return value
    return default


def load_state(state_file: str) -> Optional[ShrinkState]:
    """Load shrink state from file"""
    if not os.path.exists(state_file):
        return None
    try:
        with open(state_file, 'r') as f:
            return ShrinkState(**json.load(f))
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Could not load state from {state_file}: {e}")
        return None


class OsDiskShrinkManager:
    """Shrinks the managed OS disk of an Azure VM"""

    def __init__(self, subscription_id: str, config: ShrinkConfig, credential=None,
                 compute_client=None, storage_client=None, resource_client=None,
                 state_dir: str = STATE_DIR):
        self.subscription_id = subscription_id
        self.config = config
        self.credential = credential or DefaultAzureCredential()

        # Initialize Azure clients
        self.compute_client = compute_client or ComputeManagementClient(
            self.credential, subscription_id
        )
        self.storage_client = storage_client or StorageManagementClient(
            self.credential, subscription_id
        )
        self.resource_client = resource_client or ResourceManagementClient(
            self.credential, subscription_id
        )

        self.logger = logging.getLogger(__name__)

        os.makedirs(state_dir, exist_ok=True)
        self.state_file = state_file_for(config.vm_name or 'unknown', state_dir)
        self.state: Optional[ShrinkState] = None
        # Managed disks can live outside the VM's resource group
        self.disk_resource_group = config.resource_group

    def _save_state(self, step: Optional[str] = None):
        """Save shrink state to file"""
        if step:
            self.state.step = step
        try:
            with open(self.state_file, 'w') as f:
                json.dump(asdict(self.state), f, indent=2)
        except OSError as e:
            self.logger.error(f"Could not save state: {e}")

    def _log_operation_start(self, operation: str) -> float:
        """Log operation start and return start time"""
        start_time = time.time()
        self.logger.info(f"🚀 Starting {operation} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        return start_time

    def _log_operation_end(self, operation: str, start_time: float):
        """Log operation completion with duration"""
        duration = time.time() - start_time
        self.logger.info(f"✅ {operation} completed in {format_duration(duration)}")

    def validate_configuration(self) -> bool:
        """Check settings and the referenced Azure resources before touching anything"""
        self.logger.info("🔍 Validating configuration...")

        missing = self.config.missing_fields()
        if missing:
            self.logger.error(f"❌ Missing settings: {', '.join(missing)}")
            return False

        if int(self.config.new_size_gb) <= 0:
            self.logger.error("❌ New size must be a positive number of GiB")
            return False

        try:
            self.resource_client.resource_groups.get(self.config.resource_group)
            self.compute_client.virtual_machines.get(self.config.resource_group, self.config.vm_name)
            self.storage_client.storage_accounts.get_properties(
                self.config.storage_resource_group, self.config.storage_account
            )
        except Exception as e:
            self.logger.error(f"❌ Azure resource check failed: {e}")
            return False

        self.logger.info("✅ Configuration validation passed")
        return True

    # VM power and OS disk

    def _is_running(self, vm_name: str) -> bool:
        vm = self.compute_client.virtual_machines.get(
            self.config.resource_group, vm_name, expand='instanceView'
        )
        statuses = vm.instance_view.statuses if vm.instance_view else []
        return any(s.code == 'PowerState/running' for s in statuses)

    def _deallocate_vm(self) -> bool:
        """Deallocate the VM and return whether it was running"""
        was_running = self._is_running(self.config.vm_name)
        self.logger.info(f"⏹️ Deallocating VM {self.config.vm_name}...")
        self.compute_client.virtual_machines.begin_deallocate(
            self.config.resource_group, self.config.vm_name
        ).result()
        return was_running

    def _start_vm(self):
        self.logger.info(f"▶️ Starting VM {self.config.vm_name}...")
        self.compute_client.virtual_machines.begin_start(
            self.config.resource_group, self.config.vm_name
        ).result()

    def _swap_os_disk(self, disk) -> dict:
        """Point the VM's OS disk at disk and return the previous disk reference"""
        vm = self.compute_client.virtual_machines.get(self.config.resource_group, self.config.vm_name)
        os_disk = vm.storage_profile.os_disk
        previous = {
            'id': os_disk.managed_disk.id,
            'name': os_disk.name,
            'disk_size_gb': os_disk.disk_size_gb,
        }

        self.logger.info(f"🔁 Swapping OS disk of {self.config.vm_name}: {os_disk.name} -> {disk.name}")
        os_disk.managed_disk.id = disk.id
        os_disk.name = disk.name
        os_disk.disk_size_gb = disk.disk_size_gb
        self.compute_client.virtual_machines.begin_create_or_update(
            self.config.resource_group, self.config.vm_name, vm
        ).result()
        return previous

    def _restore_os_disk(self, previous: dict):
        self.compute_client.virtual_machines.begin_deallocate(
            self.config.resource_group, self.config.vm_name
        ).result()
        vm = self.compute_client.virtual_machines.get(self.config.resource_group, self.config.vm_name)
        os_disk = vm.storage_profile.os_disk
        self.logger.info(f"🔁 Restoring OS disk of {self.config.vm_name} to {previous['name']}")
        os_disk.managed_disk.id = previous['id']
        os_disk.name = previous['name']
        os_disk.disk_size_gb = previous['disk_size_gb']
        self.compute_client.virtual_machines.begin_create_or_update(
            self.config.resource_group, self.config.vm_name, vm
        ).result()

    # Managed disks

    def _grant_read_access(self, disk_name: str) -> str:
        access = self.compute_client.disks.begin_grant_access(
            self.disk_resource_group, disk_name,
            GrantAccessData(access='Read', duration_in_seconds=self.config.sas_duration)
        ).result()
        return access.access_sas

    def _revoke_access(self, disk_name: str):
        self.compute_client.disks.begin_revoke_access(self.disk_resource_group, disk_name).result()

    def _delete_disk(self, disk_name: str):
        self.logger.info(f"🗑️ Deleting managed disk {disk_name}...")
        self.compute_client.disks.begin_delete(self.disk_resource_group, disk_name).result()

    def _create_empty_disk(self, source_disk, disk_name: str):
        """Create an empty disk with the same generation as source_disk at the new size"""
        self.logger.info(f"💽 Creating empty {self.config.new_size_gb} GiB reference disk {disk_name}")
        disk_config = {
            'location': source_disk.location,
            'sku': {'name': source_disk.sku.name},
            'disk_size_gb': int(self.config.new_size_gb),
            'hyper_v_generation': source_disk.hyper_v_generation,
            'creation_data': {'create_option': DiskCreateOption.EMPTY},
            'tags': self.config.tags,
        }
        if source_disk.zones:
            disk_config['zones'] = source_disk.zones
        return self.compute_client.disks.begin_create_or_update(
            self.disk_resource_group, disk_name, disk_config
        ).result()

    def _import_disk_from_blob(self, source_disk, disk_name: str, blob_url: str):
        """Create a managed disk from the patched VHD blob"""
        storage_account = self.storage_client.storage_accounts.get_properties(
            self.config.storage_resource_group, self.config.storage_account
        )
        self.logger.info(f"💽 Importing managed disk {disk_name} from {blob_url}")
        disk_config = {
            'location': source_disk.location,
            'sku': {'name': source_disk.sku.name},
            'os_type': source_disk.os_type,
            'hyper_v_generation': source_disk.hyper_v_generation,
            'creation_data': {
                'create_option': DiskCreateOption.IMPORT,
                'source_uri': blob_url,
                'storage_account_id': storage_account.id,
            },
            'tags': self.config.tags,
        }
        if source_disk.zones:
            disk_config['zones'] = source_disk.zones
        return self.compute_client.disks.begin_create_or_update(
            self.disk_resource_group, disk_name, disk_config
        ).result()

    # Blob storage

    def _get_container_client(self) -> ContainerClient:
        """Return the container that holds the intermediate VHD blobs, creating it if needed"""
        storage_key = self.config.storage_account_key
        if not storage_key:
            self.logger.info(f"Retrieving storage account keys for: {self.config.storage_account}")
            keys = self.storage_client.storage_accounts.list_keys(
                self.config.storage_resource_group, self.config.storage_account
            )
            storage_key = keys.keys[0].value

        account_url = f"https://{self.config.storage_account}.blob.core.windows.net"
        blob_service = BlobServiceClient(account_url=account_url, credential=storage_key)
        container_client = blob_service.get_container_client(self.config.container)
        if not container_client.exists():
            self.logger.info(f"Creating private blob container: {self.config.container}")
            container_client.create_container()
        return container_client

    def _copy_disk_to_blob(self, disk_name: str, blob_client: BlobClient) -> BlobClient:
        """Export a managed disk into a page blob and wait for the copy to finish"""
        sas_url = self._grant_read_access(disk_name)
        try:
            self.logger.info(f"📤 Copying disk {disk_name} to blob {blob_client.blob_name}...")
            blob_client.start_copy_from_url(sas_url)
            wait_for_copy_completion(
                blob_client,
                timeout=self.config.copy_timeout,
                interval=self.config.copy_poll_interval,
            )
        finally:
            self._revoke_access(disk_name)
        return blob_client

    def _delete_blob_if_present(self, blob_client: BlobClient):
        try:
            blob_client.delete_blob(delete_snapshots='include')
            self.logger.info(f"🗑️ Deleted blob {blob_client.blob_name}")
        except ResourceNotFoundError:
            self.logger.info(f"Blob {blob_client.blob_name} already gone")

    def _transplant_with_retries(self, target: BlobClient, reference: BlobClient, expected_length: int):
        """Run the footer transplant, retrying it from the top on I/O failures"""
        attempts = max(0, int(self.config.footer_retries)) + 1
        for attempt in range(1, attempts + 1):
            try:
                return transplant_footer(
                    PageBlobImage(target), PageBlobImage(reference),
                    expected_length=expected_length,
                )
            except (ReadError, ResizeError, WriteError) as e:
                if attempt == attempts:
                    raise
                self.logger.warning(f"⚠️  Footer transplant attempt {attempt}/{attempts} failed: {e}")
                time.sleep(min(2 ** attempt, 30))

    # Workflow

    def shrink_os_disk(self) -> ShrinkState:
        """Shrink the VM's OS disk to config.new_size_gb"""
        overall_start = self._log_operation_start(f"OS disk shrink of VM '{self.config.vm_name}'")
        rg_name = self.config.resource_group
        new_size_gb = int(self.config.new_size_gb)

        vm = self.compute_client.virtual_machines.get(rg_name, self.config.vm_name)
        os_disk_ref = vm.storage_profile.os_disk
        if os_disk_ref.managed_disk is None:
            raise ShrinkError(f"VM {self.config.vm_name} does not use a managed OS disk")

        self.disk_resource_group = resource_group_from_id(os_disk_ref.managed_disk.id, rg_name)
        old_disk = self.compute_client.disks.get(self.disk_resource_group, os_disk_ref.name)
        if new_size_gb >= old_disk.disk_size_gb:
            raise ShrinkError(
                f"New size {new_size_gb} GiB must be smaller than the current {old_disk.disk_size_gb} GiB"
            )
        self.logger.info(f"OS disk {old_disk.name}: {old_disk.disk_size_gb} GiB -> {new_size_gb} GiB")

        self.state = ShrinkState(
            vm_name=self.config.vm_name,
            resource_group=rg_name,
            old_disk_id=old_disk.id,
            old_disk_name=old_disk.name,
            old_size_gb=old_disk.disk_size_gb,
            new_size_gb=new_size_gb,
            started_at=datetime.now().isoformat(),
        )
        self._save_state()

        stamp = datetime.now().strftime('%Y%m%d%H%M%S')
        container_client = self._get_container_client()
        target_blob = container_client.get_blob_client(f"{self.config.vm_name}-osdisk-{stamp}.vhd")
        reference_blob = container_client.get_blob_client(f"{self.config.vm_name}-footer-{stamp}.vhd")
        reference_disk_name = f"{old_disk.name}-footer-{stamp}"[:80]
        new_disk_name = f"{old_disk.name}-{new_size_gb}gb-{stamp}"[:80]
        cleanup = self.config.cleanup_on_failure

        with CompensatingWorkflow(self.logger) as workflow:
            workflow.run(
                f"Deallocate VM {self.config.vm_name}",
                self._deallocate_vm,
                undo=lambda was_running: self._start_vm() if was_running else None,
            )
            self._save_state('deallocated')

            workflow.run(
                f"Copy OS disk {old_disk.name} to blob",
                lambda: self._copy_disk_to_blob(old_disk.name, target_blob),
                undo=self._delete_blob_if_present if cleanup else None,
            )
            self.state.blob_url = target_blob.url
            self._save_state('copied')

            workflow.run(
                f"Create reference disk {reference_disk_name}",
                lambda: self._create_empty_disk(old_disk, reference_disk_name),
                undo=lambda disk: self._delete_disk(disk.name),
            )
            workflow.run(
                "Copy reference disk to blob",
                lambda: self._copy_disk_to_blob(reference_disk_name, reference_blob),
                undo=self._delete_blob_if_present if cleanup else None,
            )
            self._delete_disk(reference_disk_name)
            workflow.discard(f"Create reference disk {reference_disk_name}")

            expected_length = new_size_gb * GIB + FOOTER_SIZE
            try:
                workflow.run(
                    "Transplant footer",
                    lambda: self._transplant_with_retries(target_blob, reference_blob, expected_length),
                )
            except CleanupError as e:
                self.logger.warning(f"⚠️  {e}; reference blob left at {reference_blob.url}")
                self.state.reference_blob_url = reference_blob.url
            else:
                workflow.discard("Copy reference disk to blob")
            self._save_state('footer-transplanted')

            new_disk = workflow.run(
                f"Import disk {new_disk_name}",
                lambda: self._import_disk_from_blob(old_disk, new_disk_name, target_blob.url),
                undo=lambda disk: self._delete_disk(disk.name),
            )
            self.state.new_disk_id = new_disk.id
            self.state.new_disk_name = new_disk.name
            self._save_state('imported')

            workflow.run(
                f"Swap OS disk to {new_disk_name}",
                lambda: self._swap_os_disk(new_disk),
                undo=self._restore_os_disk,
            )
            self._save_state('swapped')

            if self.config.start_vm:
                workflow.run(f"Start VM {self.config.vm_name}", self._start_vm)
                self._save_state('started')

            workflow.commit()

        if not self.config.keep_blob:
            self._delete_blob_if_present(target_blob)
            self.state.blob_url = None

        self.state.completed = True
        self._save_state('completed')

        self.logger.info(f"💡 Old OS disk {old_disk.name} was kept. Delete it once the VM is verified.")
        self._log_operation_end(f"OS disk shrink of VM '{self.config.vm_name}'", overall_start)
        return self.state
