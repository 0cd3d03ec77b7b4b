"""
Top-level package for the cross-domain identity remapping utility.

This package bundles all components required to move a SharePoint site's
provisioning package from one identity domain to another: extract the user
identities it references, load a human-edited mapping of source to target
identities, confirm the targets exist in the destination site, rewrite the
package with the new identities and inspect or compare packages.  Modules
are split into subpackages:

* :mod:`identity_remap.parsers` – ``.pnp`` package access and the typed template model
* :mod:`identity_remap.extractors` – identity extraction from templates and live sites
* :mod:`identity_remap.migrators` – the identity rewrite and the SharePoint REST client
* :mod:`identity_remap.analyzers` – template summaries and comparisons
* :mod:`identity_remap.models` – pydantic models shared by the layers
* :mod:`identity_remap.utils` – errors and reports, mapping files, validation

Each layer has no direct knowledge of configuration or execution strategy;
orchestration is handled in :mod:`identity_remap.migration_tool`.
"""
