"""Core provisioning logic.

Module Structure:
    - azure/                : Graph and ARM REST clients, per-resource services
    - access_package.py     : Access package pipeline (group ─> ... ─> policy)
    - guest_invitations.py  : Guest invite and tag convergence
    - lighthouse.py         : Delegation template deployment and verification
    - eligibility.py        : Subscription eligibility scan
    - resolver.py           : Find-or-create by display name
    - retry.py              : Bounded polling for eventually consistent reads
    - models.py             : Input, result and report records
    - validators.py         : Identifier and guest input validation

Usage Pattern:
    Modules are not auto-imported; import explicitly when needed:
        from crossadmin.core.access_package import AccessPackagePipeline
        from crossadmin.core.eligibility import scan

Public APIs:
    Access package (crossadmin.core.access_package):
        - AccessPackagePipeline.run()
        - ensure_catalog(), ensure_access_package(), ensure_registered()
        - link_role_to_package(), ensure_policy()
        - build_pipeline()

    Lighthouse (crossadmin.core.lighthouse):
        - LighthouseDeployer.deploy() / .verify()
        - run_lighthouse()
        - deployment_name(), compliance_status()

    Eligibility (crossadmin.core.eligibility):
        - scan()
"""
