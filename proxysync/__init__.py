"""proxysync: keep an nginx reverse proxy in step with a container fleet.

Listens to the orchestration API's event stream and:
 - tracks services that are mid-transition (starting, scaling, stopping...)
 - waits until the fleet is quiet, then re-renders the nginx config
 - reloads nginx after each write, or when someone else edits the file
"""

__version__ = "1.0.0"
