import os
import sys
import zipfile

import pytest

# Ensure project root is on sys.path for imports when running tests directly
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)


SITE_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<pnp:Provisioning xmlns:pnp="http://schemas.dev.office.com/PnP/2022/09/ProvisioningSchema">
  <pnp:Preferences Generator="PnP.Framework" />
  <pnp:Templates ID="CONTAINER-TEMPLATE">
    <pnp:ProvisioningTemplate ID="TEMPLATE-HR" Version="1">
      <!-- exported from the HR site -->
      <pnp:Security>
        <pnp:AdditionalAdministrators>
          <pnp:User Name="i:0#.f|membership|john@a.com" />
        </pnp:AdditionalAdministrators>
        <pnp:AdditionalOwners>
          <pnp:User Name="Mary.Jones@A.com" />
        </pnp:AdditionalOwners>
        <pnp:AdditionalMembers>
          <pnp:User Name="i:0#.f|membership|svc-sync@a.com" />
        </pnp:AdditionalMembers>
        <pnp:SiteGroups>
          <pnp:SiteGroup Title="HR Members" Owner="mary.jones@a.com">
            <pnp:Members>
              <pnp:User Name="i:0#.f|membership|old@a.com" />
              <pnp:User Name="carl@a.com" />
            </pnp:Members>
          </pnp:SiteGroup>
        </pnp:SiteGroups>
      </pnp:Security>
      <pnp:SiteFields>
        <Field ID="{11111111-1111-1111-1111-111111111111}" Name="Approver" DisplayName="Approver" Type="User" Group="HR" />
      </pnp:SiteFields>
      <pnp:ContentTypes>
        <pnp:ContentType ID="0x0100AA" Name="HR Request" Group="HR" />
      </pnp:ContentTypes>
      <pnp:Lists>
        <pnp:ListInstance Title="Tasks" Url="Lists/Tasks" TemplateType="100">
          <pnp:DataRows>
            <pnp:DataRow>
              <pnp:DataValue FieldName="Title">Onboard Carl</pnp:DataValue>
              <pnp:DataValue FieldName="AssignedTo">old@a.com</pnp:DataValue>
              <pnp:DataValue FieldName="Reviewers">john@a.com;carl@a.com</pnp:DataValue>
            </pnp:DataRow>
          </pnp:DataRows>
        </pnp:ListInstance>
        <pnp:ListInstance Title="Docs" Url="Shared Documents" TemplateType="101" />
      </pnp:Lists>
      <pnp:Files>
        <pnp:File Src="Policies/handbook.docx" Folder="Shared Documents" Overwrite="true">
          <pnp:Properties>
            <pnp:Property Key="Editor" Value="john@a.com" />
            <pnp:Property Key="ContentTypeId" Value="0x0101" />
          </pnp:Properties>
        </pnp:File>
      </pnp:Files>
      <pnp:ClientSidePages>
        <pnp:ClientSidePage PageName="Home.aspx" Title="Home" Author="john@a.com" />
      </pnp:ClientSidePages>
    </pnp:ProvisioningTemplate>
  </pnp:Templates>
</pnp:Provisioning>
"""


def lists_template(*titles):
    """A minimal template whose only content is one list per title."""
    lists = "".join(f'<pnp:ListInstance Title="{t}" Url="Lists/{t}" TemplateType="100" />' for t in titles)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<pnp:ProvisioningTemplate xmlns:pnp="http://schemas.dev.office.com/PnP/2022/09/ProvisioningSchema" ID="T">'
        f"<pnp:Lists>{lists}</pnp:Lists>"
        "</pnp:ProvisioningTemplate>"
    )


def write_pnp(path, members):
    """Write a ZIP package from ``{member name: text or bytes}`` in insertion order."""
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            zf.writestr(name, data if isinstance(data, bytes) else data.encode("utf-8"))
    return str(path)


def read_member(path, name):
    with zipfile.ZipFile(path) as zf:
        return zf.read(name).decode("utf-8")


def write_csv(path, text):
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)
    return str(path)


@pytest.fixture
def site_pnp(tmp_path):
    return write_pnp(tmp_path / "site.pnp", {
        "[Content_Types].xml": '<?xml version="1.0"?><Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types" />',
        "Files/logo.png": b"\x89PNG\r\n\x1a\nnot-really-a-png",
        "Files/notes.xml": "<Notes><Owner>john@a.com</Owner></Notes>",
        "template.xml": SITE_TEMPLATE,
    })


@pytest.fixture
def no_scratch_left(monkeypatch, tmp_path):
    """Route scratch directories into ``tmp_path/scratch`` so tests can check cleanup."""
    import tempfile

    scratch_root = tmp_path / "scratch"
    scratch_root.mkdir()
    real_mkdtemp = tempfile.mkdtemp

    def mkdtemp(*args, **kwargs):
        kwargs["dir"] = str(scratch_root)
        return real_mkdtemp(*args, **kwargs)

    monkeypatch.setattr(tempfile, "mkdtemp", mkdtemp)
    return scratch_root


class FakeDirectory:
    """In-memory stand-in for the destination site."""

    def __init__(self, site_users=(), tenant_users=(), groups=None, ensure_error="User cannot be found."):
        from identity_remap.models.identity import DirectoryUser

        self._make = lambda email: DirectoryUser(Email=email, LoginName=f"i:0#.f|membership|{email}", Title=email.split("@")[0])
        self.site_users = {u.lower() for u in site_users}
        self.tenant_users = {u.lower() for u in tenant_users}
        self.groups = dict(groups or {})
        self.ensure_error = ensure_error
        self.ensured = []
        self.lookups = []

    def find_user(self, identity):
        from identity_remap.models.identity import Found, NotFound

        self.lookups.append(identity)
        if identity.lower() in self.site_users:
            return Found(self._make(identity))
        return NotFound(identity)

    def ensure_user(self, identity):
        from identity_remap.utils.errors import DirectoryError

        if identity.lower() not in self.tenant_users:
            raise DirectoryError(self.ensure_error)
        self.ensured.append(identity)
        self.site_users.add(identity.lower())
        return self._make(identity)

    def list_users(self):
        return [self._make(u) for u in sorted(self.site_users)]

    def list_groups(self):
        return list(self.groups)

    def list_group_members(self, group_name):
        return [self._make(u) for u in self.groups.get(group_name, [])]

    def iter_item_values(self, list_title):
        return iter([])


@pytest.fixture
def fake_directory_cls():
    return FakeDirectory
