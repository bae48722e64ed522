"""
Grammar tests for the PROJECT stream parser.

    python -m unittest tests.test_parser
"""

import unittest
import uuid

import vba_unlock

KEY = 0x3B


def _hex(data: bytes) -> bytes:
    return vba_unlock.bytes_to_hex(data).encode("ascii")


def make_stream(
    cmg=b"191BB5C3B9C3B9C3B9C3B9",
    dpb=b"B1B31D5E1E5E1E5E",
    gc=b"484AE4F7E5F7E508",
    name=b'"VBAProject"',
    items=(
        b"Document=ThisWorkbook/&H00000000",
        b"Document=Sheet1/&H00000000",
        b"Module=Module1",
        b"Class=Class1",
        b"BaseClass=UserForm1",
        b"Package={AC9F2F90-E877-11CE-9F68-00AA00574A4F}",
    ),
    optional=(b'HelpFile=""',),
    after_name=(b'VersionCompatible32="393222000"',),
    help_id=b"0",
    workspace=(
        b"ThisWorkbook=0, 0, 0, 0, C",
        b"Module1=26, 26, 1002, 473, Z",
        b"UserForm1=0, 0, 0, 0, C, 44, -44, 1020, 491, I",
    ),
    newline=b"\r\n",
) -> bytes:
    lines = [b'ID="{917DED54-440B-4FD1-A5C1-74ACF261E600}"']
    lines += list(items)
    lines += list(optional)
    lines.append(b"Name=" + name)
    lines.append(b'HelpContextID="' + help_id + b'"')
    lines += list(after_name)
    lines += [
        b'CMG="' + cmg + b'"',
        b'DPB="' + dpb + b'"',
        b'GC="' + gc + b'"',
        b"",
        b"[Host Extender Info]",
        b"&H00000001={3832D640-CF90-11CF-8E43-00A0C911005A};VBE;&H00000000",
    ]
    if workspace is not None:
        lines += [b"", b"[Workspace]"]
        lines += list(workspace)
    return newline.join(lines) + newline


class TestProjectGrammar(unittest.TestCase):
    def test_full_unlocked_project(self):
        project = vba_unlock.parse_project(make_stream())
        self.assertEqual(project.project_id, uuid.UUID("917DED54-440B-4FD1-A5C1-74ACF261E600"))
        self.assertEqual(project.name, "VBAProject")
        self.assertEqual(project.help_file, "")
        self.assertIsNone(project.exe_name)
        self.assertIsNone(project.description)
        self.assertEqual(project.help_id, 0)
        self.assertTrue(project.version_compatible)
        self.assertEqual(project.protection_state, vba_unlock.ProtectionState(False, False, False))
        self.assertFalse(project.is_locked())
        self.assertEqual(project.password, vba_unlock.NoPassword())
        self.assertIs(project.visibility, vba_unlock.Visibility.VISIBLE)

    def test_items(self):
        project = vba_unlock.parse_project(make_stream())
        Module, Kind = vba_unlock.Module, vba_unlock.ModuleKind
        self.assertEqual(
            project.items,
            (
                Module(Kind.DOCUMENT, "ThisWorkbook", 0),
                Module(Kind.DOCUMENT, "Sheet1", 0),
                Module(Kind.STANDARD, "Module1"),
                Module(Kind.CLASS, "Class1"),
                Module(Kind.DESIGNER, "UserForm1"),
                vba_unlock.Package(uuid.UUID("AC9F2F90-E877-11CE-9F68-00AA00574A4F")),
            ),
        )

    def test_host_extenders_and_workspace(self):
        project = vba_unlock.parse_project(make_stream())
        self.assertEqual(
            project.host_extenders,
            (vba_unlock.HostExtenderRef(1, uuid.UUID("3832D640-CF90-11CF-8E43-00A0C911005A"), "VBE", 0),),
        )
        W, S = vba_unlock.Window, vba_unlock.WindowState
        self.assertEqual(
            project.workspace,
            (
                vba_unlock.WindowRecord("ThisWorkbook", W(0, 0, 0, 0, S.CLOSED)),
                vba_unlock.WindowRecord("Module1", W(26, 26, 1002, 473, S.ZOOMED)),
                vba_unlock.WindowRecord("UserForm1", W(0, 0, 0, 0, S.CLOSED), W(44, -44, 1020, 491, S.MINIMIZED)),
            ),
        )

    def test_minimal_project(self):
        data = make_stream(items=(), optional=(), after_name=(), workspace=None)
        project = vba_unlock.parse_project(data)
        self.assertEqual(project.items, ())
        self.assertIsNone(project.help_file)
        self.assertFalse(project.version_compatible)
        self.assertIsNone(project.workspace)

    def test_empty_workspace(self):
        project = vba_unlock.parse_project(make_stream(workspace=()))
        self.assertEqual(project.workspace, ())

    def test_all_optional_fields(self):
        data = make_stream(
            optional=(b'HelpFile="C:\\help\\book.chm"', b'ExeName32="book.exe"'),
            after_name=(b'Description="A ""quoted"" project"', b'VersionCompatible32="393222000"'),
            help_id=b"-17",
        )
        project = vba_unlock.parse_project(data)
        self.assertEqual(project.help_file, "C:\\help\\book.chm")
        self.assertEqual(project.exe_name, "book.exe")
        self.assertEqual(project.description, 'A "quoted" project')
        self.assertEqual(project.help_id, -17)

    def test_lfcr_newlines(self):
        project = vba_unlock.parse_project(make_stream(newline=b"\n\r"))
        self.assertEqual(project.name, "VBAProject")

    def test_bare_lf_is_rejected(self):
        data = make_stream(newline=b"\n")
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(data)
        self.assertEqual(ctx.exception.offset, data.index(b"\n"))
        self.assertEqual(ctx.exception.buffer, data)

    def test_trailing_bytes_are_ignored(self):
        project = vba_unlock.parse_project(make_stream() + b"\r\n\r\ntrailing junk\x00\x01")
        self.assertEqual(len(project.workspace), 3)
        project = vba_unlock.parse_project(make_stream(workspace=None) + b"\r\n" * 50)
        self.assertIsNone(project.workspace)

    def test_from_bytes_alias(self):
        self.assertEqual(vba_unlock.Project.from_bytes(make_stream()), vba_unlock.parse_project(make_stream()))

    def test_parse_error_is_value_error(self):
        with self.assertRaises(ValueError):
            vba_unlock.parse_project(b"")
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(b'ID="{nope}"\r\n')
        self.assertEqual(ctx.exception.offset, 5)
        self.assertEqual(ctx.exception.remainder, b'nope}"\r\n')


class TestSubGrammars(unittest.TestCase):
    def test_name_length_bounds(self):
        project = vba_unlock.parse_project(make_stream(name=b'"' + b"N" * 128 + b'"'))
        self.assertEqual(project.name, "N" * 128)
        for name in (b'""', b'"' + b"N" * 129 + b'"'):
            with self.subTest(length=len(name) - 2):
                with self.assertRaises(vba_unlock.ProjectParseError):
                    vba_unlock.parse_project(make_stream(name=name))

    def test_name_with_doubled_quotes(self):
        project = vba_unlock.parse_project(make_stream(name=b'"My ""Project"""'))
        self.assertEqual(project.name, 'My "Project"')

    def test_name_uses_codepage(self):
        project = vba_unlock.parse_project(make_stream(name=b'"Caf\xe9\tBook!"'))
        self.assertEqual(project.name, "Caf\u00e9\tBook!")
        project = vba_unlock.parse_project(make_stream(name=b'"\xe9"'), codepage="latin-1")
        self.assertEqual(project.name, "\u00e9")

    def test_document_type_library_version_range(self):
        data = make_stream(items=(b"Document=Sheet1/&H7FFFFFFF", b"Document=Sheet2/&h0000000a"))
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(data)
        self.assertEqual(ctx.exception.offset, data.index(b"Document=Sheet2"))

        project = vba_unlock.parse_project(make_stream(items=(b"Document=Sheet1/&H7FFFFFFF", b"Document=Sheet2/&H0000000a")))
        self.assertEqual([item.doc_tlib_ver for item in project.items], [0x7FFFFFFF, 10])

        for value in (b"&HFFFFFFFF", b"&H80000000"):
            with self.subTest(value=value):
                data = make_stream(items=(b"Module=Module1", b"Document=Sheet1/" + value))
                with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
                    vba_unlock.parse_project(data)
                self.assertEqual(ctx.exception.offset, data.index(b"Document=Sheet1"))

    def test_host_extender_index_out_of_range(self):
        data = make_stream().replace(b"&H00000001={3832D640", b"&H80000000={3832D640")
        project = vba_unlock.parse_project(data)
        # an out-of-range index ends the extender list
        self.assertEqual(project.host_extenders, ())
        self.assertIsNone(project.workspace)

    def test_bad_module_identifier_stops_items(self):
        data = make_stream(items=(b"Module=Module1", b"Module=1Module"))
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(data)
        self.assertEqual(ctx.exception.offset, data.index(b"Module=1Module"))

    def test_module_identifier_length(self):
        name = b"M" + b"_a1" * 10
        project = vba_unlock.parse_project(make_stream(items=(b"Module=" + name,)))
        self.assertEqual(project.items[0].name, name.decode())
        with self.assertRaises(vba_unlock.ProjectParseError):
            vba_unlock.parse_project(make_stream(items=(b"Module=" + name + b"x",)))

    def test_help_context_id_range(self):
        project = vba_unlock.parse_project(make_stream(help_id=b"2147483647"))
        self.assertEqual(project.help_id, 2147483647)
        project = vba_unlock.parse_project(make_stream(help_id=b"-2147483648"))
        self.assertEqual(project.help_id, -2147483648)
        for help_id in (b"2147483648", b"", b"-", b"12a"):
            with self.subTest(help_id=help_id):
                with self.assertRaises(vba_unlock.ProjectParseError):
                    vba_unlock.parse_project(make_stream(help_id=help_id))

    def test_guid_accepts_lower_case(self):
        data = make_stream().replace(b"917DED54-440B-4FD1-A5C1-74ACF261E600", b"917ded54-440b-4fd1-a5c1-74acf261e600")
        project = vba_unlock.parse_project(data)
        self.assertEqual(project.project_id, uuid.UUID("917DED54-440B-4FD1-A5C1-74ACF261E600"))

    def test_bad_window_record_ends_workspace(self):
        project = vba_unlock.parse_project(
            make_stream(workspace=(b"Sheet1=1, 2, 3, 4, C", b"Module1=0, 0, 0, 0, X", b"Class1=0, 0, 0, 0, C"))
        )
        self.assertEqual(
            project.workspace,
            (vba_unlock.WindowRecord("Sheet1", vba_unlock.Window(1, 2, 3, 4, vba_unlock.WindowState.CLOSED)),),
        )

    def test_cmg_digit_bounds(self):
        # 30 digits is over the maximum of 28
        cmg = _hex(vba_unlock.encrypt_data(0x16, KEY, b"\x00\x00\x00\x00")) + b"00"
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(make_stream(cmg=cmg))
        self.assertIsNone(ctx.exception.__cause__)


class TestEncryptedFields(unittest.TestCase):
    def _parse_cause(self, **fields):
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(make_stream(**fields))
        return ctx.exception.__cause__

    def test_locked_protection_state(self):
        project = vba_unlock.parse_project(make_stream(cmg=b"CAC866BE34C234C230C630C6"))
        self.assertEqual(project.protection_state, vba_unlock.ProtectionState(False, False, True))
        self.assertTrue(project.is_locked())

    def test_protection_state_bits(self):
        project = vba_unlock.parse_project(make_stream(cmg=_hex(vba_unlock.encrypt_data(0x16, KEY, b"\x03\x00\x00\x00"))))
        self.assertEqual(project.protection_state, vba_unlock.ProtectionState(True, True, False))
        self.assertFalse(project.is_locked())

    def test_protection_state_reserved_bits(self):
        for state in (b"\x08\x00\x00\x00", b"\x00\x00\x01\x00"):
            with self.subTest(state=state):
                cause = self._parse_cause(cmg=_hex(vba_unlock.encrypt_data(0x19, KEY, state)))
                self.assertIsInstance(cause, vba_unlock.ReservedBitsError)
                self.assertEqual(cause.data, state)

    def test_protection_state_length(self):
        cause = self._parse_cause(cmg=_hex(vba_unlock.encrypt_data(0x19, KEY, b"\x00\x00\x00\x00\x00")))
        self.assertIsInstance(cause, vba_unlock.ProtectionStateLengthError)
        self.assertEqual(cause.length, 5)

    def test_hashed_password(self):
        salt = b"\x00\x10\x20\x30"
        dpb = _hex(vba_unlock.encrypt_data(0x0E, KEY, vba_unlock.encode_password("P@ssw0rd", salt)))
        project = vba_unlock.parse_project(make_stream(dpb=dpb))
        self.assertIsInstance(project.password, vba_unlock.HashedPassword)
        self.assertEqual(project.password.salt, salt)
        self.assertEqual(project.password.hash, vba_unlock.generate_hash("P@ssw0rd", salt))
        self.assertEqual(
            vba_unlock.crack_password(project.password.salt, project.password.hash, vba_unlock.default_wordlist()),
            "P@ssw0rd",
        )

    def test_plain_text_password(self):
        project = vba_unlock.parse_project(make_stream(dpb=_hex(vba_unlock.encrypt_data(0x10, KEY, b"secret\x00"))))
        self.assertEqual(project.password, vba_unlock.PlainTextPassword("secret"))

    def test_plain_text_password_needs_terminator(self):
        cause = self._parse_cause(dpb=_hex(vba_unlock.encrypt_data(0x10, KEY, b"secret!")))
        self.assertIsInstance(cause, vba_unlock.PlainTextTerminatorError)
        self.assertEqual(cause.value, ord("!"))

    def test_no_password_must_be_null(self):
        cause = self._parse_cause(dpb=_hex(vba_unlock.encrypt_data(0xB1, KEY, b"\x05")))
        self.assertIsInstance(cause, vba_unlock.PasswordNotNullError)
        self.assertEqual(cause.value, 5)

    def test_password_without_data(self):
        cause = self._parse_cause(dpb=_hex(vba_unlock.encrypt_data(0x06, KEY, b"")))
        self.assertIsInstance(cause, vba_unlock.PasswordNoDataError)

    def test_bad_password_hash(self):
        encoded = bytearray(vba_unlock.encode_password("pw", b"\x00\x01\x02\x03"))
        encoded[4] = 0x09
        cause = self._parse_cause(dpb=_hex(vba_unlock.encrypt_data(0x0E, KEY, bytes(encoded))))
        self.assertIsInstance(cause, vba_unlock.SaltNullError)
        self.assertEqual(cause.position, 0)

    def test_not_visible(self):
        project = vba_unlock.parse_project(make_stream(gc=_hex(vba_unlock.encrypt_data(0x9C, KEY, b"\x00"))))
        self.assertIs(project.visibility, vba_unlock.Visibility.NOT_VISIBLE)

    def test_invalid_visibility(self):
        cause = self._parse_cause(gc=_hex(vba_unlock.encrypt_data(0x48, KEY, b"\x01")))
        self.assertIsInstance(cause, vba_unlock.InvalidVisibilityError)
        self.assertEqual(cause.value, 1)

    def test_visibility_length(self):
        cause = self._parse_cause(gc=_hex(vba_unlock.encrypt_data(0x48, KEY, b"\xff\xff")))
        self.assertIsInstance(cause, vba_unlock.VisibilityLengthError)
        self.assertEqual(cause.length, 2)

    def test_bad_encryption_version(self):
        cause = self._parse_cause(gc=b"484BE4F7E5F7E508")
        self.assertIsInstance(cause, vba_unlock.EncryptionVersionError)
        self.assertEqual(cause.version, 3)

    def test_field_error_offset_points_at_line(self):
        data = make_stream(gc=b"484BE4F7E5F7E508")
        with self.assertRaises(vba_unlock.ProjectParseError) as ctx:
            vba_unlock.parse_project(data)
        self.assertEqual(ctx.exception.offset, data.index(b'GC="'))


class TestRemoveThenParse(unittest.TestCase):
    def test_locked_project_becomes_unlocked(self):
        salt = b"\x9a\x00\x00\x7f"
        locked = make_stream(
            cmg=b"CAC866BE34C234C230C630C6",
            dpb=_hex(vba_unlock.encrypt_data(0x0E, KEY, vba_unlock.encode_password("hunter2", salt))),
            gc=_hex(vba_unlock.encrypt_data(0x9C, KEY, b"\x00")),
        )
        before = vba_unlock.parse_project(locked)
        self.assertTrue(before.is_locked())

        unlocked = vba_unlock.unlock_project_stream(locked)
        after = vba_unlock.parse_project(unlocked)
        self.assertFalse(after.is_locked())
        self.assertEqual(after.password, vba_unlock.NoPassword())
        self.assertIs(after.visibility, vba_unlock.Visibility.VISIBLE)
        self.assertEqual(after.items, before.items)
        self.assertEqual(after.workspace, before.workspace)
        self.assertEqual(after.host_extenders, before.host_extenders)

        padded = vba_unlock.fit_stream(unlocked, len(locked))
        self.assertEqual(vba_unlock.parse_project(padded), after)


if __name__ == "__main__":
    unittest.main()
