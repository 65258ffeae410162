"""
Input validation utilities for provisioning requests.

This module turns user-supplied names into DNS-safe hostnames and checks
request fields before any remote call is made.
"""

import re
from typing import Optional, Tuple

from .exceptions import ValidationError
from .models import ProvisionRequest, CloneTemplateRequest, ReconfigureRequest, Template


MAX_NAME_LENGTH = 63

# Credential placeholder values that front-ends send instead of leaving a field empty
INVALID_CREDENTIALS = {"", "undefined", "null"}


class SecurityValidator:
    """Security validation utilities."""

    DNS_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")
    NODE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]*$")
    STORAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")

    @staticmethod
    def sanitize_vm_name(name: Optional[str]) -> Optional[str]:
        """
        Turn an arbitrary string into a DNS-safe VM name.

        Lowercases the input, replaces anything outside ``[a-z0-9.-]`` with a
        hyphen, collapses runs of separators, strips leading and trailing
        separators and truncates to 63 characters.

        Args:
            name: Proposed VM name

        Returns:
            Optional[str]: Sanitized name, or None if nothing usable remains
        """
        if not name or not isinstance(name, str):
            return None

        sanitized = name.lower()
        sanitized = re.sub(r"[^a-z0-9.-]", "-", sanitized)
        sanitized = sanitized.strip("-.")
        sanitized = re.sub(r"-+", "-", sanitized)
        sanitized = re.sub(r"\.+", ".", sanitized)
        sanitized = sanitized[:MAX_NAME_LENGTH].strip("-.")

        if not sanitized or not SecurityValidator.DNS_NAME_PATTERN.match(sanitized):
            return None
        return sanitized

    @staticmethod
    def require_vm_name(name: Optional[str]) -> str:
        """
        Sanitize a VM name or reject it.

        Raises:
            ValidationError: If the name does not sanitize to a usable token
        """
        sanitized = SecurityValidator.sanitize_vm_name(name)
        if sanitized is None:
            raise ValidationError(
                f"VM name '{name}' cannot be converted to a valid hostname", field="name"
            )
        return sanitized

    @staticmethod
    def validate_node_name(node: Optional[str]) -> str:
        """
        Validate a cluster node name.

        Args:
            node: Node name to validate

        Returns:
            str: Validated node name

        Raises:
            ValidationError: If node name is invalid
        """
        if not node or not isinstance(node, str):
            raise ValidationError("Node name must be a non-empty string", field="target_node")

        if len(node) > 253:
            raise ValidationError("Node name must be 253 characters or less", field="target_node")

        if not SecurityValidator.NODE_NAME_PATTERN.match(node):
            raise ValidationError(
                "Node name can only contain letters, numbers, dots, and hyphens",
                field="target_node",
            )

        return node

    @staticmethod
    def validate_storage_name(storage: str) -> str:
        if not SecurityValidator.STORAGE_NAME_PATTERN.match(storage or ""):
            raise ValidationError(f"Invalid storage name: {storage}", field="storage")
        return storage

    @staticmethod
    def validate_positive_int(value: object, field_name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"{field_name} must be a positive integer", field=field_name)
        return value

    @staticmethod
    def is_valid_credential(value: Optional[str]) -> bool:
        """A credential is usable unless blank or a placeholder string."""
        if value is None or not isinstance(value, str):
            return False
        return value.strip().lower() not in INVALID_CREDENTIALS

    @staticmethod
    def validate_credential_pair(user: Optional[str], password: Optional[str]) -> None:
        """
        Require cloud-init credentials to be supplied together or not at all.

        Empty or whitespace-only values count as not supplied.

        Raises:
            ValidationError: If only one of user and password is supplied
        """
        user_given = bool(user and user.strip())
        password_given = bool(password and password.strip())
        if user_given != password_given:
            raise ValidationError(
                "Cloud-init user and password must be provided together",
                field="ci_password" if user_given else "ci_user",
            )

    @staticmethod
    def resolve_credentials(
        template: Template, user: Optional[str], password: Optional[str]
    ) -> Optional[Tuple[str, str]]:
        """
        Pick the cloud-init credentials for a new VM.

        Request values override the template defaults. Returns None when no
        valid user/password pair is available.
        """
        effective_user = user if user is not None else template.ci_user
        effective_password = password if password is not None else template.ci_password
        if SecurityValidator.is_valid_credential(
            effective_user
        ) and SecurityValidator.is_valid_credential(effective_password):
            return effective_user, effective_password
        return None

    @staticmethod
    def validate_provision_request(request: ProvisionRequest) -> None:
        """
        Check required fields of a provisioning request.

        Raises:
            ValidationError: If a field is missing or malformed
        """
        required = ("template_id", "name", "target_node", "cpu_cores", "memory_mb", "disk_gb")
        missing = [name for name in required if getattr(request, name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", field=missing[0]
            )

        SecurityValidator.validate_node_name(request.target_node)
        SecurityValidator.validate_positive_int(request.cpu_cores, "cpu_cores")
        SecurityValidator.validate_positive_int(request.memory_mb, "memory_mb")
        SecurityValidator.validate_positive_int(request.disk_gb, "disk_gb")
        if request.storage is not None:
            SecurityValidator.validate_storage_name(request.storage)
        SecurityValidator.validate_credential_pair(request.ci_user, request.ci_password)

    @staticmethod
    def validate_clone_template_request(request: CloneTemplateRequest) -> None:
        required = ("template_id", "name")
        missing = [name for name in required if getattr(request, name) in (None, "")]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", field=missing[0]
            )
        if request.target_node is not None:
            SecurityValidator.validate_node_name(request.target_node)
        if request.storage is not None:
            SecurityValidator.validate_storage_name(request.storage)

    @staticmethod
    def validate_reconfigure_request(request: ReconfigureRequest) -> None:
        if not request.vm_id:
            raise ValidationError("Missing required fields: vm_id", field="vm_id")
        if not request.has_changes():
            raise ValidationError("No configuration changes requested")
        for name in ("cpu_cores", "memory_mb", "disk_gb"):
            value = getattr(request, name)
            if value is not None:
                SecurityValidator.validate_positive_int(value, name)
        SecurityValidator.validate_credential_pair(request.ci_user, request.ci_password)
