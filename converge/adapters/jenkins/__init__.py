"""Jenkins collaborators — script console runner and plugin installers."""

from converge.adapters.jenkins.gradle import GradlePluginInstaller
from converge.adapters.jenkins.script_console import JenkinsScriptRunner
from converge.adapters.jenkins.update_center import UpdateCenterInstaller

__all__ = [
    "GradlePluginInstaller",
    "JenkinsScriptRunner",
    "UpdateCenterInstaller",
]
