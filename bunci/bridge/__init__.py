"""Bridge layer between bunci and the external tools it drives.

Modules
-------
tart
    Wraps the ``tart`` CLI behind the ``VmStoreClient`` and ``RegistryClient``
    Protocols. The only place that parses tart output.
ssh
    Password-authenticated remote shell into guests (paramiko), exposed as
    the ``RemoteShell`` Protocol.
"""
