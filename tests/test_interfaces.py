from collections.abc import Callable

import pytest

import projgen

INTERFACE_XML = """
<namespace name="Ns">
  <interface name="IBase" base="Windows.Win32.System.Com.IUnknown" guid="11111111-1111-1111-1111-111111111111">
    <method name="GetCount" returns="Windows.Win32.Foundation.HRESULT">
      <param name="count" type="u4*" out="true"/>
    </method>
  </interface>
  <interface name="IDerived" base="IBase" guid="22222222-2222-2222-2222-222222222222">
    <method name="Reset" returns="Windows.Win32.Foundation.HRESULT"/>
    <method name="Describe" returns="u4">
      <param name="flags" type="u4" in="true"/>
    </method>
  </interface>
  <interface name="IRawThing">
    <method name="Poke" returns="u4"/>
  </interface>
  <interface name="IOrphan" base="Ns.IMissing">
    <method name="Lost" returns="void"/>
  </interface>
  <interface name="ILoopA" base="ILoopB"/>
  <interface name="ILoopB" base="ILoopA"/>
  <struct name="HOLDER"><field name="target" type="IDerived*"/></struct>
</namespace>
"""


def _only(generator: projgen.Generator, cls: type, name: str):
    matches = [
        d
        for d in generator.ledger.committed_declarations()
        if isinstance(d, cls) and d.name == name
    ]
    assert len(matches) == 1, f"expected one {cls.__name__} named {name}"
    return matches[0]


def test_conforming_interface_is_projected_as_interface(
    sample_generator: Callable[..., projgen.Generator],
) -> None:
    generator = sample_generator()

    generator.request_by_name("IPersist")

    persist = _only(generator, projgen.InterfaceDecl, "IPersist")
    assert persist.guid == "0000010c-0000-0000-c000-000000000046"
    assert persist.bases == ()
    assert [m.name for m in persist.methods] == ["GetClassID"]
    method = persist.methods[0]
    assert method.preserve_sig is False
    assert method.params == ()
    assert method.return_type == projgen.NamedType("Guid", "System")


def test_preserve_set_keeps_status_return(
    sample_generator: Callable[..., projgen.Generator],
) -> None:
    generator = sample_generator(
        com_interop=projgen.ComInteropOptions(
            preserve_return_code_methods=frozenset({"IPersist.GetClassID"})
        )
    )

    generator.request_by_name("IPersist")

    method = _only(generator, projgen.InterfaceDecl, "IPersist").methods[0]
    assert method.preserve_sig is True
    assert method.return_type == projgen.NamedType("HRESULT", "Windows.Win32.Foundation")
    assert [p.name for p in method.params] == ["pClassID"]


def test_derived_interface_redeclares_inherited_methods(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(INTERFACE_XML)

    generator.request_by_name("IDerived")

    derived = _only(generator, projgen.InterfaceDecl, "IDerived")
    assert derived.bases == ("Ns.IBase",)
    assert [(m.name, m.is_inherited) for m in derived.methods] == [
        ("GetCount", True),
        ("Reset", False),
        ("Describe", False),
    ]
    get_count = derived.methods[0]
    assert get_count.return_type == projgen.NamedType("uint")
    assert get_count.preserve_sig is False
    describe = derived.methods[2]
    assert describe.preserve_sig is True
    assert describe.return_type == projgen.NamedType("uint")
    base = _only(generator, projgen.InterfaceDecl, "IBase")
    assert base.bases == ()


def test_raw_style_builds_vtable_struct_with_base_slots_first(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(INTERFACE_XML, allow_marshaling=False)

    generator.request_by_name("IDerived")

    vtable = _only(generator, projgen.VtableStructDecl, "IDerived")
    assert vtable.interface_name == "IDerived"
    assert vtable.fields == (
        projgen.FieldDecl("lpVtbl", projgen.PointerTo(projgen.PointerTo(projgen.VOID_TYPE))),
    )
    assert [(s.index, s.name) for s in vtable.slots] == [
        (0, "QueryInterface"),
        (1, "AddRef"),
        (2, "Release"),
        (3, "GetCount"),
        (4, "Reset"),
        (5, "Describe"),
    ]
    assert vtable.slots[3].owner == "Ns.IBase"
    describe = vtable.slots[5].function_type
    assert describe.params == (
        projgen.PointerTo(projgen.NamedType("IDerived", "Ns")),
        projgen.NamedType("uint"),
    )
    forwarding = vtable.methods[5]
    assert forwarding.slot_index == 5
    assert forwarding.body == (
        projgen.InvokeSlot(5, describe, ("this", "flags")),
    )


def test_non_conforming_interface_is_always_a_vtable_struct(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(INTERFACE_XML)

    generator.request_by_name("IRawThing")

    vtable = _only(generator, projgen.VtableStructDecl, "IRawThing")
    assert [s.name for s in vtable.slots] == ["Poke"]
    assert not generator.interfaces.is_conforming(generator.index.find_types("IRawThing")[0])


def test_raw_reference_to_conforming_interface_uses_unmanaged_vtable(
    make_generator: Callable[..., projgen.Generator],
) -> None:
    generator = make_generator(INTERFACE_XML)

    generator.request_by_name("HOLDER")

    holder = _only(generator, projgen.StructDecl, "HOLDER")
    assert holder.fields[0].type == projgen.PointerTo(
        projgen.PointerTo(projgen.NamedType("IDerived_unmanaged", "Ns"))
    )
    vtable = _only(generator, projgen.VtableStructDecl, "IDerived_unmanaged")
    assert vtable.interface_name == "IDerived"
    key = projgen.EntityKey(projgen.KIND_TYPE, "Ns", "IDerived", unmanaged=True)
    assert key in generator.ledger


@pytest.mark.parametrize(
    ("name", "message"),
    [("IOrphan", "Unrecognized base type"), ("ILoopA", "inheritance cycle")],
)
def test_broken_inheritance_is_structural_failure(
    make_generator: Callable[..., projgen.Generator], name: str, message: str
) -> None:
    generator = make_generator(INTERFACE_XML)

    with pytest.raises(projgen.StructuralFailure, match=message):
        generator.request_by_name(name)

    assert len(generator.ledger) == 0
