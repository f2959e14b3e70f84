import os
import unittest

import hdrguard


class StubOracle:
    """Answers from a fixed set of guard macro names."""

    def __init__(self, guards):
        self.guards = set(guards)
        self.asked = []

    def is_guard_candidate(self, macro):
        self.asked.append(macro.identifier.name)
        return macro.identifier.name in self.guards


class CorrelatorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.sm = hdrguard.SourceManager()
        self.identifiers = hdrguard.IdentifierTable()

    def make_callbacks(self, guards=(), policy=None):
        self.oracle = StubOracle(guards)
        return hdrguard.HeaderGuardCallbacks(self.sm, policy, oracle=self.oracle)

    def enter(self, callbacks, path, text, origin="user"):
        buffer = self.sm.add_buffer(path, text)
        callbacks.on_enter_file(path, origin, buffer.start)
        return buffer

    def ifndef(self, callbacks, buffer, text, already_defined=False):
        """Raise on_ifndef for the first '#ifndef NAME' in the buffer."""
        directive = buffer.text.index("ifndef " + text)
        name_offset = directive + len("ifndef ")
        token = hdrguard.Token(self.identifiers.get(text), buffer.loc(name_offset))
        callbacks.on_ifndef(buffer.loc(directive), token, already_defined)
        return buffer.loc(directive)

    def define(self, callbacks, buffer, name, occurrence=0):
        start = -1
        for _ in range(occurrence + 1):
            start = buffer.text.index("define " + name, start + 1)
        loc = buffer.loc(start + len("define "))
        token = hdrguard.Token(self.identifiers.get(name), loc)
        callbacks.on_macro_defined(token, hdrguard.MacroInfo(token.identifier, loc))
        return token

    def endif(self, callbacks, buffer, if_loc, occurrence=0):
        start = -1
        for _ in range(occurrence + 1):
            start = buffer.text.index("endif", start + 1)
        callbacks.on_endif(buffer.loc(start), if_loc)
        return buffer.loc(start)


class EventRecordingTests(CorrelatorTestCase):
    def test_duplicate_routes_collapse_to_one_record(self) -> None:
        callbacks = self.make_callbacks()
        first = self.enter(callbacks, "include/foo/bar.h", "int a;\n")
        self.enter(callbacks, "src/../include/./foo/bar.h", "int a;\n")
        key = hdrguard.file_identity("include/foo/bar.h")
        self.assertEqual(list(callbacks.state.files), [key])
        self.assertEqual(callbacks.state.files[key].path, "include/foo/bar.h")
        self.assertEqual(callbacks.state.files[key].start_loc, first.start)

    def test_absolute_and_relative_spellings_are_one_file(self) -> None:
        callbacks = self.make_callbacks()
        first = self.enter(callbacks, "src/../include/foo.h", "int a;\n")
        self.enter(callbacks, os.path.join(os.getcwd(), "include", "foo.h"), "int a;\n")
        self.assertEqual(len(callbacks.state.files), 1)
        self.assertEqual(list(callbacks.state.files.values())[0].start_loc, first.start)

    def test_system_files_are_not_recorded(self) -> None:
        callbacks = self.make_callbacks()
        self.enter(callbacks, "/usr/include/stdio.h", "", origin="system")
        self.assertEqual(callbacks.state.files, {})

    def test_ifndef_of_defined_macro_is_ignored(self) -> None:
        callbacks = self.make_callbacks()
        buffer = self.enter(callbacks, "a.h", "#ifndef A_H\n")
        self.ifndef(callbacks, buffer, "A_H", already_defined=True)
        self.assertEqual(callbacks.state.ifndefs, {})

    def test_last_ifndef_wins(self) -> None:
        callbacks = self.make_callbacks()
        first = self.enter(callbacks, "a.h", "#ifndef SENTINEL\n#endif\n")
        second = self.enter(callbacks, "b.h", "#ifndef SENTINEL\n#endif\n")
        self.ifndef(callbacks, first, "SENTINEL")
        later = self.ifndef(callbacks, second, "SENTINEL")
        candidate = callbacks.state.ifndefs[self.identifiers.get("SENTINEL")]
        self.assertEqual(candidate.directive_loc, later)

    def test_every_definition_and_endif_is_recorded(self) -> None:
        callbacks = self.make_callbacks()
        buffer = self.enter(callbacks, "a.c", "#define X 1\n#define Y 2\n#if X\n#endif\n")
        self.define(callbacks, buffer, "X")
        self.define(callbacks, buffer, "Y")
        if_loc = buffer.loc(buffer.text.index("if X"))
        endif_loc = self.endif(callbacks, buffer, if_loc)
        self.assertEqual([token.spelling for token, _ in callbacks.state.macros], ["X", "Y"])
        self.assertEqual(callbacks.state.endifs, {if_loc: endif_loc})
        self.assertEqual(callbacks.diagnostics, [])


class ReconcilerTests(CorrelatorTestCase):
    HEADER = "#ifndef BAR_H\n#define BAR_H\n\nint bar(void);\n\n#endif\n"

    def replay_header(self, callbacks, path="include/foo/bar.h", text=HEADER, name="BAR_H"):
        buffer = self.enter(callbacks, path, text)
        if_loc = self.ifndef(callbacks, buffer, name)
        self.define(callbacks, buffer, name)
        self.endif(callbacks, buffer, if_loc)
        return buffer

    def test_rename_and_endif_comment(self) -> None:
        callbacks = self.make_callbacks(guards={"BAR_H"})
        buffer = self.replay_header(callbacks)
        callbacks.on_end_of_unit()

        kinds = [d.kind for d in callbacks.diagnostics]
        self.assertEqual(kinds, ["non_conforming_name", "missing_endif_comment"])

        rename, comment = callbacks.diagnostics
        self.assertEqual(rename.location, buffer.loc(len("#ifndef ")))
        self.assertEqual([f.text for f in rename.fixits], ["FOO_BAR_H", "FOO_BAR_H"])
        define_name = buffer.loc(self.HEADER.index("define BAR_H") + len("define "))
        self.assertEqual(rename.fixits[1].start, define_name)
        self.assertEqual(rename.fixits[1].end, define_name.with_offset(len("BAR_H")))

        self.assertEqual(len(comment.fixits), 1)
        self.assertEqual(comment.fixits[0].text, "endif  // FOO_BAR_H")
        self.assertEqual(self.sm.text_between(comment.fixits[0].start, comment.fixits[0].end), "endif")

    def test_conforming_guard_with_comment_is_clean(self) -> None:
        callbacks = self.make_callbacks(guards={"FOO_BAR_H_"})
        text = "#ifndef FOO_BAR_H_\n#define FOO_BAR_H_\n#endif /* FOO_BAR_H_ */\n"
        self.replay_header(callbacks, text=text, name="FOO_BAR_H_")
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_missing_ifndef_skips_checks_but_clears_file(self) -> None:
        callbacks = self.make_callbacks(guards={"BAR_H"})
        buffer = self.enter(callbacks, "include/foo/bar.h", self.HEADER)
        self.define(callbacks, buffer, "BAR_H")
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_missing_endif_pairing_skips_checks(self) -> None:
        callbacks = self.make_callbacks(guards={"BAR_H"})
        buffer = self.enter(callbacks, "include/foo/bar.h", self.HEADER)
        self.ifndef(callbacks, buffer, "BAR_H")
        self.define(callbacks, buffer, "BAR_H")
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_declined_fix_still_counts_as_guarded(self) -> None:
        policy = hdrguard.GuardPolicy(fix_exclude=["include/*"])
        callbacks = self.make_callbacks(guards={"BAR_H"}, policy=policy)
        self.replay_header(callbacks)
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_guard_seen_through_one_spelling_covers_the_other(self) -> None:
        callbacks = self.make_callbacks(guards={"FOO_BAR_H"})
        text = "#ifndef FOO_BAR_H\n#define FOO_BAR_H\n#endif  // FOO_BAR_H\n"
        self.replay_header(callbacks, path="src/../include/foo/bar.h", text=text, name="FOO_BAR_H")
        self.enter(callbacks, os.path.join(os.getcwd(), "include", "foo", "bar.h"), text)
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_non_guard_definition_leaves_file_guardless(self) -> None:
        callbacks = self.make_callbacks(guards=())
        self.replay_header(callbacks)
        callbacks.on_end_of_unit()
        self.assertEqual([d.kind for d in callbacks.diagnostics], ["missing_guard"])
        self.assertEqual(self.oracle.asked, ["BAR_H"])

    def test_guardless_header_gets_insertions(self) -> None:
        callbacks = self.make_callbacks()
        buffer = self.enter(callbacks, "include/foo/util.h", "int util(void);\n")
        callbacks.on_end_of_unit()

        self.assertEqual(len(callbacks.diagnostics), 1)
        diagnostic = callbacks.diagnostics[0]
        self.assertEqual(diagnostic.kind, "missing_guard")
        self.assertEqual(diagnostic.location, buffer.start)
        opening, closing = diagnostic.fixits
        self.assertEqual(opening, hdrguard.Insertion(buffer.start, "#ifndef FOO_UTIL_H\n#define FOO_UTIL_H\n\n"))
        self.assertEqual(closing, hdrguard.Insertion(buffer.end, "\n#endif  // FOO_UTIL_H\n"))

    def test_guardless_header_without_endif_comment_policy(self) -> None:
        callbacks = self.make_callbacks(policy=hdrguard.GuardPolicy(suggest_endif_comment=False))
        self.enter(callbacks, "include/util.h", "")
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics[0].fixits[1].text, "\n#endif\n")

    def test_non_topmost_guard_has_no_fixits(self) -> None:
        callbacks = self.make_callbacks()
        text = '#include "x.h"\n#ifndef FOO_LATE_H\n#define FOO_LATE_H\n#endif\n'
        buffer = self.enter(callbacks, "include/foo/late.h", text)
        token = self.define(callbacks, buffer, "FOO_LATE_H")
        callbacks.on_end_of_unit()

        self.assertEqual(len(callbacks.diagnostics), 1)
        diagnostic = callbacks.diagnostics[0]
        self.assertEqual(diagnostic.kind, "non_topmost_guard")
        self.assertEqual(diagnostic.message, "Header guard after code/includes. Consider moving it up.")
        self.assertEqual(diagnostic.location, token.location)
        self.assertEqual(diagnostic.fixits, ())

    def test_guard_named_macro_in_other_file_does_not_count(self) -> None:
        callbacks = self.make_callbacks()
        other = self.enter(callbacks, "src/main.c", "#define FOO_LATE_H\n")
        self.define(callbacks, other, "FOO_LATE_H")
        self.enter(callbacks, "include/foo/late.h", "int x;\n")
        callbacks.on_end_of_unit()
        self.assertEqual([d.kind for d in callbacks.diagnostics], ["missing_guard"])

    def test_non_header_files_are_not_reported(self) -> None:
        callbacks = self.make_callbacks()
        self.enter(callbacks, "src/main.c", "int main(void) { return 0; }\n")
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_state_is_cleared_after_each_unit(self) -> None:
        callbacks = self.make_callbacks(guards={"BAR_H"})
        self.replay_header(callbacks)
        self.enter(callbacks, "include/util.h", "")
        callbacks.on_end_of_unit()
        self.assertTrue(callbacks.state.is_empty())

        callbacks.diagnostics.clear()
        callbacks.on_end_of_unit()
        self.assertEqual(callbacks.diagnostics, [])

    def test_custom_sink_receives_diagnostics(self) -> None:
        received = []
        callbacks = hdrguard.HeaderGuardCallbacks(self.sm, oracle=StubOracle(()), sink=received.append)
        self.enter(callbacks, "include/util.h", "")
        callbacks.on_end_of_unit()
        self.assertEqual([d.kind for d in received], ["missing_guard"])
        self.assertEqual(callbacks.diagnostics, [])


if __name__ == "__main__":
    unittest.main()
