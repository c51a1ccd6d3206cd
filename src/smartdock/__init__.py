"""SmartDock: container schedules, reverse-proxy rules and smart wake-up."""

__version__ = "0.1.0"
