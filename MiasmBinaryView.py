# -*- encoding: utf8 -*-
#
# Copyright (c) 2021-2022 ESET spol. s r.o.
# Author: Vladislav Hrčka <vladislav.hrcka@eset.com>
# See LICENSE file for redistribution.

from miasm.analysis.machine import Machine
from miasm.analysis.binary import Container, ContainerPE
from miasm.core.locationdb import LocationDB
from miasm.core.asmblock import AsmBlockBad, AsmConstraint
from miasm.expression.expression import ExprInt
from miasm.expression.simplifications import expr_simp
from collections import namedtuple, deque
from enum import Enum
import threading
import logging
import struct

logger = logging.getLogger('MiasmBinaryView')
logger.setLevel(logging.DEBUG)

IMAGE_SCN_MEM_EXECUTE = 0x20000000


class InstrInfo(Enum):
    PUSH = 'Push'
    POP = 'Pop'
    SET_REG = 'SetReg'
    SET_FLAG = 'SetFlag'
    STORE = 'Store'
    JUMP = 'Jump'
    GOTO = 'Goto'
    TAIL_CALL = 'TailCall'
    CALL = 'Call'
    RET = 'Ret'
    IF = 'If'
    NOP = 'Nop'
    UNIMPL = 'Unimpl'


class ExprInfo(Enum):
    CONST = 'Const'
    CONST_PTR = 'ConstPtr'
    REG = 'Reg'
    FLAG = 'Flag'
    LOAD = 'Load'
    OR = 'Or'
    AND = 'And'
    XOR = 'Xor'
    ADD = 'Add'
    SUB = 'Sub'
    MUL = 'Mul'
    LSL = 'Lsl'
    LSR = 'Lsr'
    NEG = 'Neg'
    NOT = 'Not'
    ZERO_EXTEND = 'ZeroExtend'
    SLICE = 'Slice'
    COND = 'Cond'
    OP = 'Op'
    LABEL = 'Label'
    UNIMPL = 'Unimpl'


_BINARY_OPS = {
    '|': ExprInfo.OR,
    '&': ExprInfo.AND,
    '^': ExprInfo.XOR,
    '+': ExprInfo.ADD,
    '*': ExprInfo.MUL,
    '<<': ExprInfo.LSL,
    '>>': ExprInfo.LSR,
}

_FLOW_TARGETS = {InstrInfo.JUMP, InstrInfo.GOTO, InstrInfo.TAIL_CALL, InstrInfo.CALL, InstrInfo.RET}


class LiftError(Exception):
    def __init__(self, address, reason):
        super(LiftError, self).__init__("cannot lift function at 0x%x: %s" % (address, reason))
        self.address = address
        self.reason = reason


class LLILExpr(namedtuple('LLILExpr', 'operation size operands value')):
    """Expression node of the lifted view.
    @value: constant for Const/ConstPtr, name for Reg/Flag/Op, bit offset for Slice"""
    __slots__ = ()

    def __new__(cls, operation, size=0, operands=(), value=None):
        return super(LLILExpr, cls).__new__(cls, operation, size, tuple(operands), value)

    def info(self):
        return self.operation

    @property
    def src(self):
        # Load source address
        return self.operands[0] if self.operation == ExprInfo.LOAD else None


class LLILInstruction(namedtuple('LLILInstruction', 'operation address operands dest')):
    __slots__ = ()

    def __new__(cls, operation, address, operands=(), dest=None):
        return super(LLILInstruction, cls).__new__(cls, operation, address, tuple(operands), dest)

    def info(self):
        return self.operation

    @property
    def target(self):
        if self.operation in _FLOW_TARGETS and self.operands:
            return self.operands[0]
        return None

    @property
    def operand(self):
        if self.operation in _FLOW_TARGETS or not self.operands:
            return None
        return self.operands[0]


class LLILBasicBlock(namedtuple('LLILBasicBlock', 'start instructions')):
    __slots__ = ()

    def __iter__(self):
        return iter(self.instructions)

    def __len__(self):
        return len(self.instructions)


LLILFunction = namedtuple('LLILFunction', 'source_function basic_blocks')
Section = namedtuple('Section', 'name start end executable')


class Function(namedtuple('Function', 'start name')):
    __slots__ = ()

    def __new__(cls, start, name=None):
        if name is None:
            name = "sub_%x" % start
        return super(Function, cls).__new__(cls, start, name)


class LLILLifter(object):
    """Translates miasm IR of native instructions into LLIL records"""

    def __init__(self, machine, loc_db, is_tail_call):
        self.loc_db = loc_db
        self.lifter = machine.lifter(loc_db)
        self.is_tail_call = is_tail_call

    def translate_expr(self, expr, as_pointer=False):
        if expr.is_int():
            operation = ExprInfo.CONST_PTR if as_pointer else ExprInfo.CONST
            return LLILExpr(operation, expr.size, (), int(expr))
        if expr.is_loc():
            offset = self.loc_db.get_location_offset(expr.loc_key)
            if offset is None:
                return LLILExpr(ExprInfo.LABEL, expr.size, (), str(expr.loc_key))
            return LLILExpr(ExprInfo.CONST_PTR, expr.size, (), offset)
        if expr.is_id():
            operation = ExprInfo.FLAG if expr.size < 8 else ExprInfo.REG
            return LLILExpr(operation, expr.size, (), expr.name)
        if expr.is_mem():
            return LLILExpr(ExprInfo.LOAD, expr.size, (self.translate_expr(expr.ptr),))
        if expr.is_compose():
            return self._translate_compose(expr)
        if expr.is_slice():
            return LLILExpr(ExprInfo.SLICE, expr.size, (self.translate_expr(expr.arg),), expr.start)
        if expr.is_cond():
            operands = (self.translate_expr(expr.cond),
                        self.translate_expr(expr.src1, as_pointer),
                        self.translate_expr(expr.src2, as_pointer))
            return LLILExpr(ExprInfo.COND, expr.size, operands)
        if expr.is_op() and expr.op.startswith('zeroExt_'):
            # zeroExt_64({cf 0 1, ...}) is how pushfq saves the flags
            if expr.args[0].is_compose():
                return self._translate_compose(expr.args[0], expr.size)
            return LLILExpr(ExprInfo.ZERO_EXTEND, expr.size, (self.translate_expr(expr.args[0]),), expr.op)
        if expr.is_op():
            operands = tuple(self.translate_expr(arg) for arg in expr.args)
            if expr.op == '-':
                operation = ExprInfo.NEG if len(expr.args) == 1 else ExprInfo.SUB
            elif expr.op == '^' and len(expr.args) == 2 and expr.args[1].is_int((1 << expr.size) - 1):
                operation = ExprInfo.NOT
                operands = operands[:1]
            else:
                operation = _BINARY_OPS.get(expr.op, ExprInfo.OP)
            return LLILExpr(operation, expr.size, operands, expr.op)
        return LLILExpr(ExprInfo.UNIMPL, expr.size, (), str(expr))

    def _translate_compose(self, expr, size=None):
        # {cf 0 1, 1 1 2, pf 2 3, ...} -> (zx(cf) << 0x0) | (zx(0x1) << 0x1) | ...
        size = expr.size if size is None else size
        parts = []
        for start, arg in expr.iter_args():
            if arg.is_int() and int(arg) == 0:
                continue
            part = LLILExpr(ExprInfo.ZERO_EXTEND, size, (self.translate_expr(arg),))
            if start:
                part = LLILExpr(ExprInfo.LSL, size, (part, LLILExpr(ExprInfo.CONST, size, (), start)), '<<')
            parts.append(part)
        if not parts:
            return LLILExpr(ExprInfo.CONST, size, (), 0)
        if len(parts) == 1:
            return parts[0]
        return LLILExpr(ExprInfo.OR, size, parts, '|')

    def get_assignments(self, instr):
        try:
            exprs, _ = self.lifter.get_ir(instr)
        except (KeyError, NotImplementedError, ValueError) as err:
            raise LiftError(instr.offset, "no semantics for %s (%r)" % (instr, err))
        assignments = []
        for assign in exprs:
            assignments.append((expr_simp(assign.dst), expr_simp(assign.src)))
        return assignments

    def lift_instruction(self, instr):
        assignments = self.get_assignments(instr)
        address = instr.offset
        irdst = dict(assignments).get(self.lifter.IRDst)
        side_effects = [(dst, src) for dst, src in assignments
                        if dst not in (self.lifter.IRDst, self.lifter.pc)]

        if irdst is not None:
            return self._lift_flow(instr, irdst, side_effects)
        if not side_effects:
            return [LLILInstruction(InstrInfo.NOP, address)]
        return self._lift_assignments(address, side_effects)

    def _lift_flow(self, instr, irdst, side_effects):
        address = instr.offset
        if instr.is_subcall():
            return [LLILInstruction(InstrInfo.CALL, address, (self.translate_expr(irdst, True),))]
        if instr.name.startswith('RET'):
            return [LLILInstruction(InstrInfo.RET, address, (self.translate_expr(irdst, True),))]

        out = []
        if side_effects:
            out.extend(self._lift_assignments(address, side_effects))
        if irdst.is_cond():
            out.append(LLILInstruction(InstrInfo.IF, address, self.translate_expr(irdst, True).operands))
            return out
        target = self.translate_expr(irdst, True)
        if target.operation == ExprInfo.CONST_PTR:
            if self.is_tail_call(address, target.value):
                out.append(LLILInstruction(InstrInfo.TAIL_CALL, address, (target,)))
            else:
                out.append(LLILInstruction(InstrInfo.GOTO, address, (target,)))
        else:
            out.append(LLILInstruction(InstrInfo.JUMP, address, (target,)))
        return out

    def _lift_assignments(self, address, assignments):
        sp = self.lifter.sp
        new_sp = dict(assignments).get(sp)
        out = []
        for dst, src in assignments:
            if dst == sp:
                continue
            if new_sp is not None and dst.is_mem() and dst.ptr == new_sp:
                out.append(LLILInstruction(InstrInfo.PUSH, address, (self.translate_expr(src),)))
            elif new_sp is not None and src.is_mem() and src.ptr == sp and \
                    new_sp == expr_simp(sp + ExprInt(src.size // 8, sp.size)):
                out.append(LLILInstruction(InstrInfo.POP, address, (), self.translate_expr(dst)))
            elif dst.is_mem():
                out.append(LLILInstruction(InstrInfo.STORE, address, (self.translate_expr(src),),
                                           self.translate_expr(dst.ptr)))
            elif dst.is_id() and dst.size < 8:
                out.append(LLILInstruction(InstrInfo.SET_FLAG, address, (self.translate_expr(src),),
                                           self.translate_expr(dst)))
            else:
                out.append(LLILInstruction(InstrInfo.SET_REG, address, (self.translate_expr(src),),
                                           self.translate_expr(dst)))
        if new_sp is not None and not any(i.operation in (InstrInfo.PUSH, InstrInfo.POP) for i in out):
            out.append(LLILInstruction(InstrInfo.SET_REG, address, (self.translate_expr(new_sp),),
                                       self.translate_expr(sp)))
        return out


class MiasmBinaryView(object):
    def __init__(self, machine_name, bin_stream, sections, entry_points=(), loc_db=None, max_blocks=1000):
        self.machine = Machine(machine_name)
        self.loc_db = LocationDB() if loc_db is None else loc_db
        self.mdis = self.machine.dis_engine(bin_stream, loc_db=self.loc_db)
        self.lifter = LLILLifter(self.machine, self.loc_db, self._is_tail_call)
        self.bin_stream = bin_stream
        self._sections = list(sections)
        self.entry_points = list(entry_points)
        self.max_blocks = max_blocks
        self._functions = {}
        self._llil_cache = {}
        self._lock = threading.RLock()
        for addr in self.entry_points:
            self.add_function(addr)

    @classmethod
    def from_file(cls, file_path, **kwargs):
        loc_db = LocationDB()
        with open(file_path, 'rb') as stream:
            cont = Container.from_stream(stream, loc_db)
        if not isinstance(cont, ContainerPE):
            raise ValueError("%s is not a PE image" % file_path)
        sections = pe_sections(cont.executable)
        entry_points = [cont.entry_point] if cont.entry_point else []
        return cls(cont.arch, cont.bin_stream, sections, entry_points, loc_db, **kwargs)

    def sections(self):
        return list(self._sections)

    def section_at(self, addr):
        for section in self._sections:
            if section.start <= addr < section.end:
                return section
        return None

    def functions(self):
        with self._lock:
            funcs = [func for funcs in self._functions.values() for func in funcs]
        return sorted(funcs)

    def functions_at(self, addr):
        with self._lock:
            return list(self._functions.get(addr, ()))

    def add_function(self, addr, name=None):
        func = Function(addr, name)
        with self._lock:
            funcs = self._functions.setdefault(addr, [])
            if func not in funcs:
                funcs.append(func)
        return func

    def _is_tail_call(self, src, dst):
        dst_section = self.section_at(dst)
        if dst_section is None or dst_section != self.section_at(src):
            return True
        with self._lock:
            return dst in self._functions

    def scan_call_targets(self, skip_ranges=()):
        """Linear sweep for `call rel32` whose destination lands in code.
        Sections starting in `skip_ranges` are not swept and no target inside
        `skip_ranges` is returned."""
        targets = set()
        mask = (1 << self.lifter.lifter.pc.size) - 1
        for section in self._sections:
            if not section.executable or any(section.start in r for r in skip_ranges):
                continue
            try:
                data = self.bin_stream.getbytes(section.start, section.end - section.start)
            except IOError:
                logger.debug("section %s is not backed by file data" % section.name)
                continue
            offset = data.find(b'\xe8')
            while offset != -1 and offset + 5 <= len(data):
                rel = struct.unpack('<i', data[offset + 1:offset + 5])[0]
                dst = (section.start + offset + 5 + rel) & mask
                dst_section = self.section_at(dst)
                if dst_section is not None and dst_section.executable and \
                        not any(dst in r for r in skip_ranges):
                    targets.add(dst)
                offset = data.find(b'\xe8', offset + 1)
        return sorted(targets)

    def update_analysis(self, seeds=(), skip_ranges=(), scan_calls=False, max_functions=None):
        """Register functions reachable from the entry points, the given seeds and
        optionally every call target found by linear sweep"""
        todo = deque(self.entry_points)
        todo.extend(seeds)
        if scan_calls:
            todo.extend(self.scan_call_targets(skip_ranges))
        done = set()
        while todo:
            addr = todo.popleft()
            if addr in done:
                continue
            if max_functions is not None and len(done) == max_functions:
                logger.warning("Maximum function count has been reached at 0x%x" % addr)
                break
            done.add(addr)
            funcs = self.functions_at(addr) or [self.add_function(addr)]
            if any(addr in r for r in skip_ranges):
                continue
            try:
                llil_func = self.low_level_il(funcs[0])
            except LiftError as err:
                logger.debug(str(err))
                continue
            for block in llil_func.basic_blocks:
                for instr in block:
                    if instr.operation not in (InstrInfo.CALL, InstrInfo.TAIL_CALL):
                        continue
                    if instr.target.operation != ExprInfo.CONST_PTR:
                        continue
                    dst = instr.target.value
                    if dst not in done and self.section_at(dst) is not None:
                        todo.append(dst)
        # Tail calls depend on the registry, relift against the final one
        with self._lock:
            self._llil_cache.clear()
        logger.info("%d functions registered" % len(self._functions))

    def low_level_il(self, func):
        with self._lock:
            if func.start not in self._llil_cache:
                try:
                    self._llil_cache[func.start] = self._lift_function(func)
                except LiftError as err:
                    self._llil_cache[func.start] = err
            result = self._llil_cache[func.start]
        if isinstance(result, LiftError):
            raise result
        return LLILFunction(func, result.basic_blocks)

    def _lift_block(self, addr, strict):
        block = self.mdis.dis_block(addr)
        if isinstance(block, AsmBlockBad) or not block.lines:
            raise LiftError(addr, "cannot disassemble block at 0x%x" % addr)
        instructions = []
        for instr in block.lines:
            try:
                instructions.extend(self.lifter.lift_instruction(instr))
            except LiftError:
                if strict:
                    raise
                instructions.append(LLILInstruction(InstrInfo.UNIMPL, instr.offset))
        return block, LLILBasicBlock(addr, instructions)

    def _successors(self, block, llil_block):
        if llil_block.instructions[-1].operation == InstrInfo.TAIL_CALL:
            return []
        out = []
        for cst in block.bto:
            if cst.c_t not in (AsmConstraint.c_next, AsmConstraint.c_to):
                continue
            offset = self.loc_db.get_location_offset(cst.loc_key)
            if offset is not None:
                out.append(offset)
        return sorted(out)

    def _lift_function(self, func):
        if self.section_at(func.start) is None:
            raise LiftError(func.start, "address is not mapped")
        block, entry = self._lift_block(func.start, True)
        blocks = [entry]
        seen = {func.start}
        todo = deque(self._successors(block, entry))
        while todo and len(blocks) < self.max_blocks:
            addr = todo.popleft()
            if addr in seen:
                continue
            seen.add(addr)
            if self.section_at(addr) is None:
                continue
            try:
                block, llil_block = self._lift_block(addr, False)
            except LiftError as err:
                logger.debug("skipping block in %s: %s" % (func.name, err))
                continue
            blocks.append(llil_block)
            todo.extend(self._successors(block, llil_block))
        return LLILFunction(func, blocks)


def pe_sections(pe):
    image_base = pe.NThdr.ImageBase
    sections = []
    for shdr in pe.SHList.shlist:
        name = shdr.name
        if isinstance(name, bytes):
            name = name.split(b'\x00', 1)[0].decode('latin-1')
        size = shdr.size or shdr.rawsize
        start = image_base + shdr.addr
        sections.append(Section(name, start, start + size, bool(shdr.flags & IMAGE_SCN_MEM_EXECUTE)))
    return sections
