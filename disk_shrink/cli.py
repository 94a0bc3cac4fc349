"""Command line interface for the OS disk shrink tools"""

import argparse
import logging
import os
import subprocess
import sys
from typing import Optional

from .config import ShrinkConfig
from .errors import CopyTimeoutError, PreconditionError, TransplantError
from .footer import VhdFooter
from .images import open_image
from .shrink_manager import OsDiskShrinkManager, load_state, state_file_for
from .transplant import read_footer_block, transplant_footer

LOG_DIR = 'var/logs'


def setup_logging(name: str, debug: bool = False, log_dir: str = LOG_DIR):
    """Setup logging configuration"""
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(os.path.join(log_dir, f"{name}.log")),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Reduce Azure SDK logging verbosity
    logging.getLogger('azure').setLevel(logging.WARNING)
    logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)
    logging.getLogger('azure.mgmt').setLevel(logging.WARNING)
    logging.getLogger('azure.identity').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def get_subscription_id(explicit: Optional[str]) -> Optional[str]:
    """Subscription from the command line, the environment or the az cli default"""
    subscription_id = explicit or os.getenv('AZURE_SUBSCRIPTION_ID')
    if subscription_id:
        return subscription_id
    try:
        result = subprocess.run(['az', 'account', 'show', '--query', 'id', '-o', 'tsv'],
                                capture_output=True, text=True, check=True)
        return result.stdout.strip()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Azure OS disk shrink tools')
    parser.add_argument('action', choices=['shrink', 'transplant', 'inspect', 'status'],
                        help='Action to perform')
    parser.add_argument('images', nargs='*',
                        help='transplant: TARGET REFERENCE, inspect: IMAGE (local path or SAS blob URL)')

    parser.add_argument('--subscription-id',
                        help='Azure subscription ID (will use az cli default if not provided)')
    parser.add_argument('--config', default='config.yaml',
                        help='Configuration file (default: config.yaml)')

    # Shrink options (these override config.yaml values if provided)
    parser.add_argument('--resource-group', help='Resource group of the VM')
    parser.add_argument('--vm-name', help='VM whose OS disk is shrunk')
    parser.add_argument('--new-size-gb', type=int, help='New OS disk size in GiB')
    parser.add_argument('--storage-account', help='Storage account for the intermediate VHD blobs')
    parser.add_argument('--container', help='Blob container for the intermediate VHD blobs')
    parser.add_argument('--copy-timeout', type=int, help='Seconds to wait for each blob copy')
    parser.add_argument('--no-start', action='store_true', help='Leave the VM deallocated after the swap')
    parser.add_argument('--keep-blob', action='store_true', help='Keep the patched VHD blob after import')

    # Transplant options
    parser.add_argument('--no-validate', action='store_true',
                        help='Do not require the reference footer to be a valid fixed VHD footer')
    parser.add_argument('--keep-reference', action='store_true',
                        help='Do not delete the reference image after the transplant')

    parser.add_argument('--debug', action='store_true', help='Enable debug output')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Automatically answer yes to all prompts')
    return parser


def confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        print("🚀 --yes flag provided, proceeding without confirmation...")
        return True
    response = input(f"{prompt} Type 'yes' to confirm: ")
    return response.lower() == 'yes'


def run_shrink(args) -> int:
    subscription_id = get_subscription_id(args.subscription_id)
    if not subscription_id:
        print("Error: Could not get subscription ID from Azure CLI.")
        print("Please run 'az login' or provide --subscription-id")
        return 1

    config = ShrinkConfig(
        resource_group=args.resource_group,
        vm_name=args.vm_name,
        new_size_gb=args.new_size_gb,
        storage_account=args.storage_account,
        container=args.container,
        copy_timeout=args.copy_timeout,
        start_vm=False if args.no_start else None,
        keep_blob=True if args.keep_blob else None,
        config_file=args.config,
    )

    manager = OsDiskShrinkManager(subscription_id, config)
    if not manager.validate_configuration():
        return 1

    print(f"⚠️  WARNING: VM '{config.vm_name}' will be deallocated and its OS disk replaced "
          f"by a {config.new_size_gb} GiB copy.")
    print("   The guest partitions must already end below the new size.")
    if not confirm("Are you sure?", args.yes):
        print("Operation cancelled")
        return 0

    state = manager.shrink_os_disk()
    print("✅ OS disk shrunk successfully!")
    print(f"Old disk (kept): {state.old_disk_name} ({state.old_size_gb} GiB)")
    print(f"New disk: {state.new_disk_name} ({state.new_size_gb} GiB)")
    return 0


def run_transplant(args) -> int:
    if len(args.images) != 2:
        print("Error: transplant needs TARGET and REFERENCE")
        return 1
    target, reference = (open_image(location) for location in args.images)

    print(f"Target: {target.name} ({target.length} bytes)")
    print(f"Reference: {reference.name} ({reference.length} bytes)")
    if not confirm("The target will be resized and its last 512 bytes overwritten.", args.yes):
        print("Operation cancelled")
        return 0

    transplant_footer(
        target, reference,
        validate=not args.no_validate,
        discard_reference=not args.keep_reference,
    )
    print(f"✅ Footer transplanted, {target.name} is now {target.length} bytes")
    return 0


def run_inspect(args) -> int:
    if len(args.images) != 1:
        print("Error: inspect needs exactly one IMAGE")
        return 1
    image = open_image(args.images[0])
    _, block = read_footer_block(image)
    footer = VhdFooter.parse(block)
    print(f"Footer of {image.name}:")
    for key, value in footer.describe().items():
        print(f"  {key}: {value}")
    return 0


def run_status(args) -> int:
    config = ShrinkConfig(vm_name=args.vm_name, config_file=args.config)
    if not config.vm_name:
        print("Error: --vm-name is required")
        return 1
    state = load_state(state_file_for(config.vm_name))
    if not state:
        print(f"No shrink state found for VM '{config.vm_name}'")
        return 0
    print("Current shrink status:")
    for key, value in vars(state).items():
        print(f"  {key}: {value}")
    return 0


ACTIONS = {
    'shrink': run_shrink,
    'transplant': run_transplant,
    'inspect': run_inspect,
    'status': run_status,
}


def main(argv=None) -> int:
    """Main CLI interface"""
    args = build_parser().parse_args(argv)
    setup_logging('disk-shrink', debug=args.debug)

    try:
        return ACTIONS[args.action](args)
    except Exception as e:
        error_msg = str(e)
        print(f"❌ Error: {error_msg}")

        # Provide helpful guidance for common errors
        if isinstance(e, PreconditionError):
            print("\n💡 The reference image must be an empty fixed VHD created at exactly the target size.")
            print("   Use --no-validate to transplant a footer that is not a fixed VHD footer.")
        elif isinstance(e, TransplantError):
            print("\n💡 The target image is not a valid disk until the transplant succeeds.")
            print("   The reference image was kept, re-run the transplant to retry.")
        elif isinstance(e, CopyTimeoutError):
            print("\n💡 Raise copy_timeout in config.yaml or use --copy-timeout for large disks.")
        return 1


if __name__ == '__main__':
    sys.exit(main())
