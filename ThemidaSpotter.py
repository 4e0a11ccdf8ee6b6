# -*- encoding: utf8 -*-
#
# Copyright (c) 2021-2022 ESET spol. s r.o.
# Author: Vladislav Hrčka <vladislav.hrcka@eset.com>
# See LICENSE file for redistribution.

from MiasmBinaryView import MiasmBinaryView, InstrInfo, ExprInfo, LiftError
from concurrent.futures import ThreadPoolExecutor
from collections import namedtuple
from enum import Enum
import logging

logger = logging.getLogger('ThemidaSpotter')
logger.setLevel(logging.DEBUG)

# Themida/WinLicense 3.x only
THEMIDA_SECTION_NAMES = ('.boot', '.themida', '.winlice', '.vlizer')


class AddressRange(namedtuple('AddressRange', 'start end')):
    __slots__ = ()

    def __new__(cls, start, end):
        if start > end:
            raise ValueError("invalid range [0x%x, 0x%x)" % (start, end))
        return super(AddressRange, cls).__new__(cls, start, end)

    def __contains__(self, addr):
        return self.start <= addr < self.end


# Ranges of the protector's sections
CodeEntryDestRange = AddressRange


class EntryKind(Enum):
    VM_ENTER = 'VMEnter'
    MUT_ENTER = 'MutEnter'


class CodeEntryDescription(namedtuple('CodeEntryDescription', 'kind address')):
    __slots__ = ()

    @classmethod
    def vm_enter(cls, address):
        return cls(EntryKind.VM_ENTER, address)

    @classmethod
    def mut_enter(cls, address):
        return cls(EntryKind.MUT_ENTER, address)

    def __str__(self):
        return "%s(0x%x)" % (self.kind.value, self.address)


CodeEntry = namedtuple('CodeEntry', 'function description')


def build_section_ranges(sections, names=THEMIDA_SECTION_NAMES):
    return [CodeEntryDestRange(section.start, section.end) for section in sections if section.name in names]


def ranges_contain(ranges, addr):
    return any(addr in r for r in ranges)


def _first(iterable):
    for item in iterable:
        return item
    return None


def _last(iterable):
    item = None
    for item in iterable:
        pass
    return item


def instruction_is_pushfd(instruction):
    """Return `True` if the given LLIL instruction corresponds to a `pushfd` instruction"""
    if instruction.info() != InstrInfo.PUSH:
        return False
    # Operand should be a `or` (with many flags)
    return instruction.operand is not None and instruction.operand.info() == ExprInfo.OR


def block_is_vmenter_start(block):
    """Return `True` if the given basic block starts with a `pushfd` instruction"""
    first_inst = _first(block)
    return first_inst is not None and instruction_is_pushfd(first_inst)


def block_is_vmenter_end(block):
    """Return `True` if the given basic block ends with a `jmp [reg]` instruction"""
    last_inst = _last(block)
    if last_inst is None or last_inst.info() != InstrInfo.JUMP:
        return False
    target = last_inst.target
    if target is None or target.info() != ExprInfo.LOAD:
        return False
    return target.src.info() == ExprInfo.REG


def function_is_vm_enter(llil_func):
    """Return `True` if the first block looks like the start of a VMEnter and
    one basic block looks like the end of a VMEnter"""
    first_block = _first(llil_func.basic_blocks)
    if first_block is None or not block_is_vmenter_start(first_block):
        return False
    return any(block_is_vmenter_end(block) for block in llil_func.basic_blocks)


def destination_is_vmenter(bv, destination_addr):
    """Return `True` if any function starting at `destination_addr` looks like
    a VMEnter routine"""
    for code_entry_func in bv.functions_at(destination_addr):
        try:
            llil_code_entry_func = bv.low_level_il(code_entry_func)
        except LiftError as err:
            logger.debug(str(err))
            continue
        if function_is_vm_enter(llil_code_entry_func):
            return True
    return False


def search_for_themida_code_entries(bv, func, themida_section_ranges):
    logger.debug("Processing '%s'" % func.name)

    # Functions inside of Themida's sections are not entries
    if ranges_contain(themida_section_ranges, func.start):
        return None

    try:
        llil_func = bv.low_level_il(func)
    except LiftError as err:
        logger.debug(str(err))
        return None

    # Only the first basic block is searched, partially obfuscated functions
    # are missed
    first_block = _first(llil_func.basic_blocks)
    if first_block is None:
        return None
    first_inst = _first(first_block)
    # Match `jmp imm` instruction
    if first_inst is None or first_inst.info() != InstrInfo.TAIL_CALL:
        return None
    target = first_inst.target
    if target is None or target.info() != ExprInfo.CONST_PTR:
        return None
    jmp_destination = target.value
    if not ranges_contain(themida_section_ranges, jmp_destination):
        return None

    # We're in an obfuscated code entry, either mutated or virtualized
    if destination_is_vmenter(bv, jmp_destination):
        logger.debug("Themida VMEnter detected at 0x%x ('%s')" % (first_inst.address, func.name))
        return CodeEntryDescription.vm_enter(first_inst.address)

    # Doesn't look virtualized, assume it's mutated
    logger.debug("Themida MUTEnter detected at 0x%x ('%s')" % (first_inst.address, func.name))
    return CodeEntryDescription.mut_enter(first_inst.address)


classify = search_for_themida_code_entries


class ThemidaSpotter(object):
    protector_section_names = THEMIDA_SECTION_NAMES
    workers = 1
    scan_calls = True
    max_blocks = 1000
    max_functions = None

    def __init__(self, file_path=None, view=None, seeds=()):
        if view is None:
            if file_path is None:
                raise ValueError("a file path or a binary view is required")
            view = MiasmBinaryView.from_file(file_path, max_blocks=self.max_blocks)
        self.view = view
        self.seeds = list(seeds)

    def protector_ranges(self):
        return build_section_ranges(self.view.sections(), self.protector_section_names)

    def candidate_functions(self, ranges):
        seen = set()
        for func in self.view.functions():
            if func in seen or ranges_contain(ranges, func.start):
                continue
            seen.add(func)
            yield func

    def _classify(self, func, ranges):
        description = classify(self.view, func, ranges)
        if description is None:
            return None
        return CodeEntry(func, description)

    def process(self, workers=None, report_path=None):
        ranges = self.protector_ranges()
        if not ranges:
            logger.warning("No Themida section found (%s)" % ', '.join(self.protector_section_names))
            return []
        for r in ranges:
            logger.debug("Themida section [0x%x, 0x%x)" % (r.start, r.end))

        self.view.update_analysis(seeds=self.seeds, skip_ranges=ranges, scan_calls=self.scan_calls,
                                  max_functions=self.max_functions)
        candidates = list(self.candidate_functions(ranges))
        workers = self.workers if workers is None else workers
        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(lambda func: self._classify(func, ranges), candidates))
        else:
            results = [self._classify(func, ranges) for func in candidates]

        entries = sorted((entry for entry in results if entry is not None), key=lambda e: e.function)
        for entry in entries:
            logger.info("%s in '%s'" % (entry.description, entry.function.name))
        logger.info("%d code entries found in %d functions" % (len(entries), len(candidates)))
        if report_path:
            self.write_report(entries, report_path)
        return entries

    @staticmethod
    def write_report(entries, report_path):
        with open(report_path, 'w') as report:
            for entry in entries:
                report.write("%s 0x%x 0x%x %s\n" % (entry.description.kind.value, entry.description.address,
                                                     entry.function.start, entry.function.name))
