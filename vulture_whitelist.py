# Vulture whitelist file
# This file contains false positives that vulture incorrectly flags as dead code.
# These are typically Pydantic fields, Protocol members, pytest fixtures, etc.
#
# Usage: python3 -m vulture cloudpublish tests vulture_whitelist.py

# =============================================================================
# Console entry point (registered in pyproject.toml [project.scripts])
# =============================================================================
main  # cli.py - cloudpublish console script

# =============================================================================
# Pydantic Model Fields (read from management API responses)
# =============================================================================
# Parsed from XML and kept for callers and logging.
# Vulture sees them as unused class variables.
_.description  # HostedService / create inputs
_.endpoints  # StorageService
_.secondary  # StorageKeys
_.certificate_url  # Certificate
_.instance_size  # RoleInstance
_.ip_address  # RoleInstance
_.url  # Deployment / HostedService
_.label  # Deployment
_.role_to_upgrade  # UpgradeDeploymentInput
_.force  # UpgradeDeploymentInput
_.thumbprint_algorithm  # Certificate / HostedServiceExtension
_.version  # HostedServiceExtension

# =============================================================================
# Pydantic model_config (ConfigDict for Pydantic v2 configuration)
# =============================================================================
_.model_config  # frozen value models

# =============================================================================
# Pydantic Config class attributes
# =============================================================================
Config  # config.py - Pydantic settings class
_.env_prefix  # Pydantic settings configuration
_.env_file  # Pydantic settings configuration
_.case_sensitive  # Pydantic settings configuration

# =============================================================================
# Enum Values (reported by the remote API, matched by value)
# =============================================================================
_.SUSPENDED  # DeploymentStatus
_.RUNNING_TRANSITIONING  # DeploymentStatus
_.SUSPENDED_TRANSITIONING  # DeploymentStatus
_.SUSPENDING  # DeploymentStatus
_.DEPLOYING  # DeploymentStatus
_.DELETING  # DeploymentStatus / StorageAccountStatus
_.CREATING  # StorageAccountStatus
_.RESOLVING_DNS  # StorageAccountStatus
_.SUCCEEDED  # OperationState
_.MANUAL  # UpgradeMode
_.WARNING  # NotificationLevel

# =============================================================================
# Protocol members (implemented by ServiceManagementClient and test doubles)
# =============================================================================
_.export_pfx  # CertificateStore
_.prepare  # ArtifactProvider

# =============================================================================
# Pytest Fixtures (discovered by pytest at runtime by name)
# =============================================================================
reset_validation_cache  # conftest.py - clears cached config validation
fast_settings  # conftest.py - instant polling intervals
restore_config_validation  # test_config_validation.py
clean_checks  # test_cli.py
running_channel  # test_remote_desktop_service.py
