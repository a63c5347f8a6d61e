"""Default setup step vocabulary wired to configured shell commands.

Each step runs the commands listed under ``provisioning.steps.<id>`` in the
configuration file. A step without commands succeeds as a no-op, which lets a
host enable only the parts of the stack it needs. Completion markers keep the
names operators already know from existing state files.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import ConfigError, ProvisioningConfig, StepCommandsConfig
from .providers.commands import CommandRunner, state_environment, wait_for_port
from .state.store import StateStore
from .steps import StepRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """Static description of a default setup step."""

    id: str
    key: str
    requires: tuple[str, ...]
    description: str


SETUP_STEPS: tuple[StepDefinition, ...] = (
    StepDefinition("preflight", "PREFLIGHT_COMPLETED", (), "System checks"),
    StepDefinition("packages", "PACKAGES_INSTALLED", ("preflight",), "Install dependencies"),
    StepDefinition("configure", "CONFIG_COMPLETED", ("packages",), "Site configuration"),
    StepDefinition("users", "USERS_CONFIGURED", ("configure",), "System and SFTP users"),
    StepDefinition(
        "database", "DATABASE_CONFIGURED", ("packages", "configure"), "Database server"
    ),
    StepDefinition(
        "webserver", "WEBSERVER_CONFIGURED", ("packages", "configure"), "Web server"
    ),
    StepDefinition(
        "application",
        "APPLICATION_INSTALLED",
        ("users", "database", "webserver"),
        "Application install",
    ),
    StepDefinition("tls", "SSL_CONFIGURED", ("webserver", "application"), "TLS certificates"),
    StepDefinition("security", "SECURITY_CONFIGURED", ("users", "webserver"), "Hardening"),
    StepDefinition(
        "backups", "BACKUP_CONFIGURED", ("database", "application"), "Backup schedule"
    ),
)


@dataclass(slots=True)
class CommandStepAction:
    """Run a step's configured commands, then wait for its service if asked."""

    step_id: str
    config: StepCommandsConfig
    store: StateStore
    runner: CommandRunner

    def __call__(self) -> None:
        if not self.config.commands and self.config.wait_for_port is None:
            LOGGER.info("No commands configured for %s; nothing to do", self.step_id)
            return
        env = state_environment(self.store.items())
        for index, command in enumerate(self.config.commands, start=1):
            self.runner.run(
                command,
                env=env,
                timeout=self.config.timeout,
                error_prefix=f"{self.step_id} command {index}",
            )
        wait = self.config.wait_for_port
        if wait is not None:
            waited = wait_for_port(wait.host, wait.port, timeout=wait.timeout)
            LOGGER.info("%s: %s:%s ready after %.1fs", self.step_id, wait.host, wait.port, waited)


def build_setup_registry(
    config: ProvisioningConfig,
    store: StateStore,
    runner: CommandRunner | None = None,
) -> StepRegistry:
    """Return the registry of default setup steps bound to *config*."""
    known = {definition.id for definition in SETUP_STEPS}
    unknown = sorted(set(config.steps) - known)
    if unknown:
        raise ConfigError(
            f"Unknown provisioning steps: {', '.join(unknown)}. "
            f"Known steps: {', '.join(d.id for d in SETUP_STEPS)}."
        )

    command_runner = runner or CommandRunner(shell=config.shell)
    registry = StepRegistry()
    for definition in SETUP_STEPS:
        registry.step(
            definition.id,
            CommandStepAction(
                step_id=definition.id,
                config=config.for_step(definition.id),
                store=store,
                runner=command_runner,
            ),
            requires=definition.requires,
            key=definition.key,
            description=definition.description,
        )
    return registry


__all__ = ["CommandStepAction", "SETUP_STEPS", "StepDefinition", "build_setup_registry"]
