"""
CLI layer for mission-spine.

Provides a Typer application for inspecting what runs left behind on
disk: persisted execution states and incremental sync checkpoints. This
package handles only terminal transport: argument parsing, coloured
output, and table formatting.

Entry point::

    missionspine executions list
    missionspine sync list my-mission
"""
