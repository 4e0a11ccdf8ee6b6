import os
import tempfile
import unittest

from MiasmBinaryView import LLILInstruction, InstrInfo
from ThemidaSpotter import (classify, destination_is_vmenter, build_section_ranges, CodeEntryDescription,
                            ThemidaSpotter)
from tests.fixtures.synthetic_view import (SyntheticView, TEXT, THEMIDA, BOOT, block, tail_call, pushfd,
                                           push, jump, load, reg, ret, set_reg, const)

VMENTER = 0x500000
MUTATED = 0x500100


def vmenter_blocks(start):
    return [
        block(start, pushfd(start), push(start + 1, reg('eax'))),
        block(start + 0x10, jump(start + 0x10, load(reg('eax')))),
    ]


def mutated_blocks(start):
    return [block(start, set_reg(start, reg('eax'), const(1)), ret(start + 5))]


class ClassifyTests(unittest.TestCase):
    def setUp(self):
        self.view = SyntheticView([TEXT, THEMIDA, BOOT])
        self.ranges = build_section_ranges(self.view.sections())
        self.view.add_function(VMENTER, vmenter_blocks(VMENTER))
        self.view.add_function(MUTATED, mutated_blocks(MUTATED))

    def entry(self, start, destination):
        return self.view.add_function(start, [block(start, tail_call(start, destination))])

    def test_vmenter(self):
        func = self.entry(0x401000, VMENTER)
        self.assertEqual(classify(self.view, func, self.ranges), CodeEntryDescription.vm_enter(0x401000))

    def test_mutenter_fallback(self):
        func = self.entry(0x401000, MUTATED)
        self.assertEqual(classify(self.view, func, self.ranges), CodeEntryDescription.mut_enter(0x401000))

    def test_destination_without_function_is_mutated(self):
        func = self.entry(0x401000, 0x500200)
        self.assertEqual(classify(self.view, func, self.ranges), CodeEntryDescription.mut_enter(0x401000))

    def test_destination_lift_failure_is_mutated(self):
        self.view.add_function(0x500300)
        func = self.entry(0x401000, 0x500300)
        self.assertEqual(classify(self.view, func, self.ranges), CodeEntryDescription.mut_enter(0x401000))

    def test_idempotent(self):
        func = self.entry(0x401000, VMENTER)
        self.assertEqual(classify(self.view, func, self.ranges), classify(self.view, func, self.ranges))

    def test_function_inside_protector_section(self):
        func = self.entry(0x600000, VMENTER)
        self.assertIsNone(classify(self.view, func, self.ranges))
        self.assertNotIn(func, self.view.lift_requests)

    def test_first_instruction_not_tail_call(self):
        func = self.view.add_function(0x401000, [block(0x401000, push(0x401000, reg('ebp')),
                                                        tail_call(0x401001, VMENTER))])
        self.assertIsNone(classify(self.view, func, self.ranges))

    def test_indirect_tail_call(self):
        indirect = LLILInstruction(InstrInfo.TAIL_CALL, 0x401000, (reg('eax'),))
        func = self.view.add_function(0x401000, [block(0x401000, indirect)])
        self.assertIsNone(classify(self.view, func, self.ranges))

    def test_tail_call_outside_protector(self):
        func = self.entry(0x401000, 0x401800)
        self.assertIsNone(classify(self.view, func, self.ranges))

    def test_only_first_block_is_inspected(self):
        func = self.view.add_function(0x401000, [
            block(0x401000, push(0x401000, reg('ebp'))),
            block(0x401010, tail_call(0x401010, VMENTER)),
        ])
        self.assertIsNone(classify(self.view, func, self.ranges))

    def test_empty_protector_ranges(self):
        func = self.entry(0x401000, VMENTER)
        self.assertIsNone(classify(self.view, func, []))

    def test_lift_failure(self):
        func = self.view.add_function(0x401000)
        self.assertIsNone(classify(self.view, func, self.ranges))

    def test_degenerate_functions(self):
        no_blocks = self.view.add_function(0x401000, [])
        empty_block = self.view.add_function(0x401100, [block(0x401100)])
        self.assertIsNone(classify(self.view, no_blocks, self.ranges))
        self.assertIsNone(classify(self.view, empty_block, self.ranges))


class DestinationTests(unittest.TestCase):
    def test_any_candidate_matches(self):
        view = SyntheticView([THEMIDA])
        view.add_function(VMENTER, mutated_blocks(VMENTER), name='dup_a')
        view.add_function(VMENTER, vmenter_blocks(VMENTER), name='dup_b')
        self.assertTrue(destination_is_vmenter(view, VMENTER))

    def test_first_match_short_circuits(self):
        view = SyntheticView([THEMIDA])
        first = view.add_function(VMENTER, vmenter_blocks(VMENTER), name='dup_a')
        view.add_function(VMENTER, mutated_blocks(VMENTER), name='dup_b')
        self.assertTrue(destination_is_vmenter(view, VMENTER))
        self.assertEqual(view.lift_requests, [first])

    def test_failed_candidate_is_skipped(self):
        view = SyntheticView([THEMIDA])
        view.add_function(VMENTER, name='broken')
        view.add_function(VMENTER, vmenter_blocks(VMENTER), name='good')
        self.assertTrue(destination_is_vmenter(view, VMENTER))

    def test_no_candidate(self):
        self.assertFalse(destination_is_vmenter(SyntheticView([THEMIDA]), VMENTER))


class ThemidaSpotterTests(unittest.TestCase):
    def build_view(self):
        view = SyntheticView([TEXT, THEMIDA])
        view.add_function(VMENTER, vmenter_blocks(VMENTER))
        view.add_function(MUTATED, mutated_blocks(MUTATED))
        view.add_function(0x401200, [block(0x401200, tail_call(0x401200, MUTATED))])
        view.add_function(0x401000, [block(0x401000, tail_call(0x401000, VMENTER))])
        view.add_function(0x401100, [block(0x401100, ret(0x401100))])
        view.add_function(0x401300)
        return view

    def test_process(self):
        view = self.build_view()
        entries = ThemidaSpotter(view=view).process()
        self.assertEqual([(e.function.start, e.description) for e in entries], [
            (0x401000, CodeEntryDescription.vm_enter(0x401000)),
            (0x401200, CodeEntryDescription.mut_enter(0x401200)),
        ])
        self.assertEqual(len(view.analysis_requests), 1)

    def test_process_in_parallel(self):
        sequential = ThemidaSpotter(view=self.build_view()).process(workers=1)
        parallel = ThemidaSpotter(view=self.build_view()).process(workers=4)
        self.assertEqual(sequential, parallel)

    def test_duplicate_function_reported_once(self):
        view = self.build_view()
        view._functions.append(view.functions_at(0x401000)[0])
        entries = ThemidaSpotter(view=view).process()
        self.assertEqual([e.function.start for e in entries], [0x401000, 0x401200])

    def test_no_protector_section(self):
        view = SyntheticView([TEXT])
        view.add_function(0x401000, [block(0x401000, tail_call(0x401000, VMENTER))])
        self.assertEqual(ThemidaSpotter(view=view).process(), [])
        self.assertEqual(view.analysis_requests, [])

    def test_subclass_section_names(self):
        class Renamed(ThemidaSpotter):
            protector_section_names = ('.text',)

        view = self.build_view()
        # every .text function is now protector-owned
        self.assertEqual(Renamed(view=view).process(), [])

    def test_report(self):
        fd, path = tempfile.mkstemp()
        os.close(fd)
        try:
            ThemidaSpotter(view=self.build_view()).process(report_path=path)
            with open(path) as report:
                lines = report.read().splitlines()
        finally:
            os.remove(path)
        self.assertEqual(lines, [
            "VMEnter 0x401000 0x401000 sub_401000",
            "MutEnter 0x401200 0x401200 sub_401200",
        ])

    def test_requires_input(self):
        with self.assertRaises(ValueError):
            ThemidaSpotter()


if __name__ == "__main__":
    unittest.main()
